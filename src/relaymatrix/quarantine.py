# quarantine.py
from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from loguru import logger

from .errors import InvalidSpec


@dataclass(frozen=True)
class QuarantineEntry:
    job: str      # exact job id or glob (e.g. "model-based-test*")
    reason: str


@lru_cache(maxsize=None)
def _glob(pattern: str) -> re.Pattern:
    # only * and ? are wildcards; brackets in axis job ids stay literal
    return re.compile(re.escape(pattern).replace(r"\*", ".*").replace(r"\?", "."))


class QuarantineRegistry:
    """
    Table of job ids that must not run (known-flaky or deliberately disabled).

    Append-only: an entry, once added, stays for the life of the registry.
    Readers use the current immutable snapshot and never take the lock.
    """

    def __init__(self, entries: Iterable[QuarantineEntry] = ()):
        self._lock = threading.Lock()
        self._entries: Tuple[QuarantineEntry, ...] = ()
        for e in entries:
            self.quarantine(e.job, e.reason)

    def quarantine(self, job: str, reason: str) -> bool:
        """Add an entry. Returns False if the id/pattern was already present."""
        job = job.strip()
        if not job:
            raise ValueError("quarantine entry needs a job id or pattern")
        with self._lock:
            if any(e.job == job for e in self._entries):
                return False
            self._entries = self._entries + (QuarantineEntry(job=job, reason=reason),)
        logger.debug("quarantined {} ({})", job, reason)
        return True

    def entry_for(self, job_id: str) -> QuarantineEntry | None:
        for e in self._entries:
            if e.job == job_id or _glob(e.job).fullmatch(job_id):
                return e
        return None

    def is_quarantined(self, job_id: str) -> bool:
        return self.entry_for(job_id) is not None

    def list(self) -> List[QuarantineEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def load(self, path: str | Path) -> int:
        """
        Merge entries from a flake-tracking file.

        Accepted JSON shapes:
          - [{"job": "...", "reason": "..."}, ...]
          - {"job-id": "reason", ...}

        Returns the number of new entries.
        """
        p = Path(path).expanduser()
        if not p.exists():
            raise FileNotFoundError(f"Quarantine file not found: {p}")
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise InvalidSpec(f"quarantine file {p} is not valid JSON", [str(e)]) from e

        pairs: List[Tuple[str, str]] = []
        if isinstance(data, dict):
            pairs = [(str(k), str(v)) for k, v in data.items()]
        elif isinstance(data, list):
            for item in data:
                if not isinstance(item, dict) or "job" not in item:
                    raise InvalidSpec(f"quarantine file {p}: every entry needs a 'job' key", [repr(item)])
                pairs.append((str(item["job"]), str(item.get("reason", "listed in quarantine file"))))
        else:
            raise InvalidSpec(f"quarantine file {p} must hold a list or an object")

        added = sum(1 for job, reason in pairs if self.quarantine(job, reason))
        logger.info("loaded {} quarantine entries from {}", added, p)
        return added

    def as_dict(self) -> Dict[str, str]:
        return {e.job: e.reason for e in self._entries}
