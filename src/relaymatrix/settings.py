from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional


def _default_max_jobs() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    """Run configuration. Environment variables first, CLI flags override."""
    max_jobs: int
    case_timeout: float = 1800.0
    acquire_retries: int = 0
    retry_delay: float = 5.0
    log_level: str = "INFO"
    json_logs: bool = False
    backend: str = "static"
    package_index: str = "packages.json"
    flake: str = "."
    quarantine_file: Optional[str] = None
    work_root: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            max_jobs=_env_int("RELAYMATRIX_MAX_JOBS", _default_max_jobs()),
            case_timeout=_env_float("RELAYMATRIX_CASE_TIMEOUT", 1800.0),
            acquire_retries=_env_int("RELAYMATRIX_ACQUIRE_RETRIES", 0),
            retry_delay=_env_float("RELAYMATRIX_RETRY_DELAY", 5.0),
            log_level=os.environ.get("RELAYMATRIX_LOG_LEVEL", "INFO").upper(),
            json_logs=_env_bool("RELAYMATRIX_JSON_LOGS", False),
            backend=os.environ.get("RELAYMATRIX_BACKEND", "static"),
            package_index=os.environ.get("RELAYMATRIX_PACKAGE_INDEX", "packages.json"),
            flake=os.environ.get("RELAYMATRIX_FLAKE", "."),
            quarantine_file=os.environ.get("RELAYMATRIX_QUARANTINE_FILE") or None,
            work_root=os.environ.get("RELAYMATRIX_WORK_ROOT") or None,
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with every non-None change applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
