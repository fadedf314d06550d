# model.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class CaseOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class JobOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    QUARANTINED = "quarantined"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------
# Matrix declaration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixAxis:
    """
    One named dimension of the matrix.

    kind:
      - "env":     variant is substituted into the family's environment template
      - "feature": variant is also added to the job's feature flags
    """
    name: str
    variants: Tuple[str, ...]
    kind: str = "env"


@dataclass(frozen=True)
class TestCase:
    """A single test case the suite runner can execute."""
    __test__ = False  # keep pytest from collecting this class

    name: str
    command: Tuple[str, ...] = ()
    tags: frozenset = frozenset()


@dataclass
class JobFamily:
    """
    A group of jobs sharing a filter, feature set and environment template.

    A family without axes expands to exactly one job (a feature-gated suite).
    """
    name: str
    environment: str
    axes: List[MatrixAxis] = field(default_factory=list)
    toolchain: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    test_filter: str = ""
    concurrency: int = 1
    fail_fast: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    cases: Optional[List[TestCase]] = None

    # static quarantine (disabled suite); None means "runs normally"
    quarantine_reason: Optional[str] = None


@dataclass
class MatrixSpec:
    name: str
    families: List[JobFamily]
    max_jobs: int = 256

    # change-based selection: the run is relevant only if a changed file matches
    paths: List[str] = field(default_factory=list)

    # commands executed once before any job (e.g. building the test binary)
    prepare: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------
# Expanded jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EnvironmentRef:
    """Symbolic environment identifier: main package plus toolchain packages."""
    package: str
    toolchain: Tuple[str, ...] = ()

    def packages(self) -> Tuple[str, ...]:
        return (self.package, *self.toolchain)

    def __str__(self) -> str:
        return "+".join(self.packages())


@dataclass(frozen=True)
class Job:
    id: str
    family: str
    environment: EnvironmentRef
    features: frozenset
    test_filter: str
    concurrency: int
    index: int = 0
    fail_fast: bool = False
    env: Tuple[Tuple[str, str], ...] = ()
    cases: Optional[Tuple[TestCase, ...]] = None
    quarantined: bool = False
    quarantine_reason: Optional[str] = None

    @property
    def env_vars(self) -> Dict[str, str]:
        return dict(self.env)


# ---------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedPackage:
    name: str
    version: str
    path: str
    executables: Tuple[Tuple[str, str], ...] = ()
    content: str = ""  # store hash or executable digest


@dataclass(frozen=True)
class Environment:
    ref: EnvironmentRef
    digest: str
    packages: Tuple[ResolvedPackage, ...]
    workdir: Path
    lease: str

    @property
    def executables(self) -> Dict[str, Path]:
        out: Dict[str, Path] = {}
        for pkg in self.packages:
            for name, path in pkg.executables:
                out.setdefault(name, Path(path))
        return out

    def bin_dirs(self) -> List[str]:
        dirs: List[str] = []
        for path in self.executables.values():
            d = str(path.parent)
            if d not in dirs:
                dirs.append(d)
        return dirs

    def process_env(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Child process environment: package bins first on PATH, private
        HOME/TMPDIR. The cargo and rustup homes stay pinned to the caller's
        so the prebuilt toolchain, registry and target cache are reused.
        """
        env = os.environ.copy()
        real_home = Path(env.get("HOME") or Path.home())
        env.setdefault("CARGO_HOME", str(real_home / ".cargo"))
        env.setdefault("RUSTUP_HOME", str(real_home / ".rustup"))

        path = os.pathsep.join(self.bin_dirs())
        if env.get("PATH"):
            path = f"{path}{os.pathsep}{env['PATH']}" if path else env["PATH"]
        env["PATH"] = path
        env["HOME"] = str(self.workdir)
        env["TMPDIR"] = str(self.workdir / "tmp")
        env["RELAYMATRIX_ENVIRONMENT"] = str(self.ref)
        env["RELAYMATRIX_ENVIRONMENT_DIGEST"] = self.digest
        env.update(extra or {})
        return env


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TestCaseResult:
    __test__ = False

    name: str
    outcome: CaseOutcome
    duration: float = 0.0
    diagnostic: Optional[str] = None


@dataclass(frozen=True)
class JobResult:
    job_id: str
    outcome: JobOutcome
    cases: Tuple[TestCaseResult, ...] = ()
    reason: Optional[str] = None
    attempts: int = 0
    duration: float = 0.0

    def counts(self) -> Dict[str, int]:
        out = {o.value: 0 for o in CaseOutcome}
        for c in self.cases:
            out[c.outcome.value] += 1
        return out


@dataclass(frozen=True)
class RunReport:
    results: Tuple[JobResult, ...]
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return all(
            r.outcome == JobOutcome.PASS
            for r in self.results
            if r.outcome != JobOutcome.QUARANTINED
        )

    def by_outcome(self, outcome: JobOutcome) -> List[JobResult]:
        return [r for r in self.results if r.outcome == outcome]

    def get(self, job_id: str) -> JobResult:
        for r in self.results:
            if r.job_id == job_id:
                return r
        raise KeyError(job_id)
