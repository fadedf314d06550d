# environment.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from loguru import logger

from .errors import CaseTimeout, EnvironmentUnavailable
from .model import Environment, EnvironmentRef, ResolvedPackage
from .process import CancelToken, run_process

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# environment digest = hash(
#     ref,
#     every resolved package: name, version, path, executables, content hash
# )
#
# The same ref against an unchanged package index always yields the same
# digest. Each acquisition gets its own lease and private working directory,
# so two jobs never share chain state even when they use the same ref.
# ---------------------------------------------------------------------


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def environment_digest(ref: EnvironmentRef, packages: Tuple[ResolvedPackage, ...]) -> str:
    payload = {
        "v": 1,  # bump this if the digest format changes
        "ref": str(ref),
        "packages": [
            {
                "name": p.name,
                "version": p.version,
                "path": p.path,
                "executables": sorted(p.executables),
                "content": p.content,
            }
            for p in packages
        ],
    }
    return _sha256_str(_json_dumps_stable(payload))


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class Backend:
    """Resolves one package name to a concrete, executable package."""

    name = "backend"

    def resolve(self, package: str, token: Optional[CancelToken] = None) -> ResolvedPackage:
        raise NotImplementedError


class StaticBackend(Backend):
    """
    Package index backed by a JSON file:

        {
          "gaia6": {
            "version": "6.0.4",
            "path": "/opt/chains/gaia6",
            "executables": {"gaiad": "bin/gaiad"}
          }
        }

    Relative executable paths are resolved against the package path, and a
    relative package path against the index file's directory.
    """

    name = "static"

    def __init__(self, index: Dict[str, dict], root: str | Path = "."):
        self.index = index
        self.root = Path(root).resolve()

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticBackend":
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise FileNotFoundError(f"Package index not found: {p}")
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Package index {p} must be a JSON object")
        return cls(data, root=p.parent)

    def resolve(self, package: str, token: Optional[CancelToken] = None) -> ResolvedPackage:
        if token is not None:
            token.raise_if_cancelled()

        entry = self.index.get(package)
        if entry is None:
            raise EnvironmentUnavailable(
                ref=package,
                package=package,
                message=f"not in package index (known: {sorted(self.index)})",
            )

        base = Path(entry.get("path", package))
        if not base.is_absolute():
            base = self.root / base

        executables: List[Tuple[str, str]] = []
        digests: List[str] = []
        for exe_name, rel in sorted((entry.get("executables") or {}).items()):
            exe = Path(rel)
            if not exe.is_absolute():
                exe = base / exe
            if not exe.is_file() or not os.access(exe, os.X_OK):
                raise EnvironmentUnavailable(
                    ref=package,
                    package=package,
                    message=f"executable '{exe_name}' missing or not executable at {exe}",
                )
            executables.append((exe_name, str(exe)))
            digests.append(_hash_file_contents(exe))

        return ResolvedPackage(
            name=package,
            version=str(entry.get("version", "")),
            path=str(base),
            executables=tuple(executables),
            content=_sha256_str("|".join(digests)),
        )


class NixBackend(Backend):
    """
    Resolve packages from a Nix flake:

        nix build --no-link --print-out-paths <flake>#<package>

    Store paths are content addressed, so the same flake lock yields the
    same environment.
    """

    name = "nix"

    def __init__(self, flake: str = ".", *, nix: str = "nix", timeout: float = 3600.0):
        self.flake = flake
        self.nix = nix
        self.timeout = timeout

    def resolve(self, package: str, token: Optional[CancelToken] = None) -> ResolvedPackage:
        cmd = [self.nix, "build", "--no-link", "--print-out-paths", f"{self.flake}#{package}"]
        try:
            proc = run_process(cmd, timeout=self.timeout, token=token, name=f"nix build {package}")
        except FileNotFoundError as e:
            raise EnvironmentUnavailable(ref=package, package=package, message=f"{self.nix} not found") from e
        except CaseTimeout as e:
            raise EnvironmentUnavailable(ref=package, package=package, message=str(e)) from e

        if not proc.ok:
            raise EnvironmentUnavailable(
                ref=package,
                package=package,
                message=f"nix build failed (exit={proc.exit_code}): {proc.stderr.strip()[-2000:]}",
            )

        lines = [l.strip() for l in proc.stdout.splitlines() if l.strip()]
        if not lines:
            raise EnvironmentUnavailable(ref=package, package=package, message="nix build printed no output path")

        out = Path(lines[-1])
        # /nix/store/<hash>-<name>-<version>
        store_hash, _, store_name = out.name.partition("-")

        bin_dir = out / "bin"
        executables: List[Tuple[str, str]] = []
        if bin_dir.is_dir():
            for exe in sorted(bin_dir.iterdir()):
                if exe.is_file() and os.access(exe, os.X_OK):
                    executables.append((exe.name, str(exe)))

        return ResolvedPackage(
            name=package,
            version=store_name,
            path=str(out),
            executables=tuple(executables),
            content=store_hash,
        )


# ---------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------

class EnvironmentProvider:
    """
    Turns environment refs into leased, isolated environments.

    Resolution is memoised per ref. Every acquisition pins the resolved
    digest and owns a private workdir until it is released.
    """

    def __init__(self, backend: Backend, *, work_root: str | Path | None = None):
        self.backend = backend
        self.work_root = Path(work_root).resolve() if work_root else None
        self._lock = threading.Lock()
        self._resolved: Dict[EnvironmentRef, Tuple[str, Tuple[ResolvedPackage, ...]]] = {}
        self._pins: Dict[str, int] = {}
        self._active: Dict[str, Environment] = {}

    # ---- resolution ----

    def resolve(
        self,
        ref: EnvironmentRef,
        token: Optional[CancelToken] = None,
    ) -> Tuple[str, Tuple[ResolvedPackage, ...]]:
        with self._lock:
            cached = self._resolved.get(ref)
        if cached is not None:
            return cached

        packages: List[ResolvedPackage] = []
        for name in ref.packages():
            if token is not None:
                token.raise_if_cancelled()
            try:
                packages.append(self.backend.resolve(name, token))
            except EnvironmentUnavailable as e:
                raise EnvironmentUnavailable(ref=str(ref), package=e.package or name, message=e.message) from e
            except OSError as e:
                raise EnvironmentUnavailable(ref=str(ref), package=name, message=str(e)) from e

        resolved = (environment_digest(ref, tuple(packages)), tuple(packages))
        with self._lock:
            # first writer wins; both results are identical for an unchanged index
            resolved = self._resolved.setdefault(ref, resolved)
        logger.debug("resolved {} -> {}", ref, resolved[0][:12])
        return resolved

    # ---- leasing ----

    def _lease(self, ref: EnvironmentRef, token: Optional[CancelToken]) -> Environment:
        digest, packages = self.resolve(ref, token)

        lease = uuid.uuid4().hex[:12]
        slug = str(ref).replace("/", "_").replace("+", "_")
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=f"relaymatrix-{slug}-{lease}-", dir=self.work_root))
        (workdir / "tmp").mkdir()

        env = Environment(ref=ref, digest=digest, packages=packages, workdir=workdir, lease=lease)
        with self._lock:
            self._pins[digest] = self._pins.get(digest, 0) + 1
            self._active[lease] = env
        logger.info("acquired {} digest={} lease={}", ref, digest[:12], lease)
        return env

    def release(self, env: Environment) -> None:
        """Unpin and clean up. Safe to call more than once."""
        with self._lock:
            if self._active.pop(env.lease, None) is None:
                return
            n = self._pins.get(env.digest, 0) - 1
            if n > 0:
                self._pins[env.digest] = n
            else:
                self._pins.pop(env.digest, None)
        shutil.rmtree(env.workdir, ignore_errors=True)
        logger.info("released {} lease={}", env.ref, env.lease)

    @contextmanager
    def acquire(self, ref: EnvironmentRef, token: Optional[CancelToken] = None) -> Iterator[Environment]:
        """
        Scoped acquisition:

            with provider.acquire(job.environment, token) as env:
                ...

        The environment is released on every exit path.
        """
        env = self._lease(ref, token)
        try:
            yield env
        finally:
            self.release(env)

    # ---- introspection ----

    def active(self) -> List[Environment]:
        with self._lock:
            return list(self._active.values())

    def pins(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._pins)


def make_backend(kind: str, *, index: str | Path = "packages.json", flake: str = ".") -> Backend:
    if kind == "static":
        return StaticBackend.from_file(index)
    if kind == "nix":
        return NixBackend(flake)
    raise ValueError(f"Unknown environment backend: {kind!r} (expected 'static' or 'nix')")
