# runner.py
from __future__ import annotations

import runpy
import subprocess
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from .cases import CargoCaseSource, CaseSource
from .environment import EnvironmentProvider, make_backend
from .errors import InvalidSpec, PrepareFailed, RunCancelled
from .expand import expand, select_families
from .git_facts.git import (
    changed_files,
    head_sha,
    is_dirty,
    merge_base,
    repo_root as git_repo_root,
    working_tree_changes,
)
from .model import Job, JobOutcome, JobResult, MatrixSpec, RunReport
from .process import CancelToken, run_process
from .quarantine import QuarantineRegistry
from .scheduler import JobScheduler, ResultCallback
from .settings import Settings
from .suite import ProcessCaseExecutor, TestSuiteRunner


# ----------------------------------------------------------------------
# Matrix loading (local python file)
# ----------------------------------------------------------------------

def load_matrix(path: str | Path) -> MatrixSpec:
    """
    Load a matrix definition from a python file.

    The file must define either:
      - matrix_spec() -> MatrixSpec
      - MATRIX = MatrixSpec(...)
    """
    spec_path = Path(path).expanduser().resolve()
    if not spec_path.exists():
        raise FileNotFoundError(f"Matrix file not found: {spec_path}")
    if spec_path.suffix != ".py":
        raise ValueError(f"Matrix must be a .py file, got: {spec_path.name}")

    module_name = f"relaymatrix_matrix_{spec_path.stem}"
    globals_dict = runpy.run_path(str(spec_path), run_name=module_name)

    spec = None
    if "matrix_spec" in globals_dict and callable(globals_dict["matrix_spec"]):
        spec = globals_dict["matrix_spec"]()
    elif "MATRIX" in globals_dict:
        spec = globals_dict["MATRIX"]

    if not isinstance(spec, MatrixSpec):
        raise TypeError(
            "Matrix file must return/define a MatrixSpec. "
            "Define matrix_spec() -> MatrixSpec or MATRIX = matrix(...)."
        )
    return spec


# ----------------------------------------------------------------------
# Change-based selection
# ----------------------------------------------------------------------

def changed_paths(compare_ref: str = "origin/master", cwd: str | Path = ".") -> List[str]:
    """
    Files touched by the current change:
      - dirty tree: staged, unstaged and untracked files
      - clean tree: diff against the merge-base with `compare_ref`
    """
    if is_dirty(cwd=cwd):
        return working_tree_changes(cwd=cwd)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # no remote configured: compare with the previous commit
        base = "HEAD~1"
    return changed_files(base, "HEAD", cwd=cwd)


def locate_repo(cwd: str | Path = ".") -> Tuple[Path, Optional[str]]:
    """Repository root and HEAD commit. Outside a git checkout: (cwd, None)."""
    try:
        return git_repo_root(cwd=cwd), head_sha(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd).resolve(), None


def is_relevant(spec: MatrixSpec, changed: Iterable[str]) -> Tuple[bool, List[str]]:
    """Returns (relevant, matching files). A spec without paths is always relevant."""
    if not spec.paths:
        return True, []
    hits = sorted(f for f in changed if any(fnmatch(f, p) for p in spec.paths))
    return bool(hits), hits


# ----------------------------------------------------------------------
# Prepare step (build once, run everywhere)
# ----------------------------------------------------------------------

def run_prepare(
    spec: MatrixSpec,
    *,
    cwd: str | Path = ".",
    token: Optional[CancelToken] = None,
    builds: Iterable[Sequence[str]] = (),
) -> None:
    """Run the matrix prepare commands, then the per-feature-set test builds."""
    for cmd in [*spec.prepare, *builds]:
        display = cmd if isinstance(cmd, str) else " ".join(cmd)
        logger.info("prepare: {}", display)
        proc = run_process(cmd, cwd=cwd, token=token, name="prepare")
        if not proc.ok:
            raise PrepareFailed(command=display, exit_code=proc.exit_code, output=proc.tail())


def cancelled_report(
    jobs: Iterable[Job],
    registry: QuarantineRegistry,
    reason: str,
    on_result: Optional[ResultCallback] = None,
) -> RunReport:
    """Report for a run stopped before dispatch: quarantined jobs stay quarantined."""
    results = []
    for job in jobs:
        entry = registry.entry_for(job.id)
        if entry is not None:
            result = JobResult(job.id, JobOutcome.QUARANTINED, reason=entry.reason)
        else:
            result = JobResult(job.id, JobOutcome.CANCELLED, reason=f"{reason} (during prepare)")
        if on_result is not None:
            on_result(job, result)
        results.append(result)
    return RunReport(results=tuple(results), cancelled=True)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

@dataclass
class MatrixRun:
    jobs: List[Job]
    report: RunReport


def feature_tags(spec: MatrixSpec) -> Dict[str, List[str]]:
    """
    Case tags derived from feature-gated families: a case matching such a
    family's filter needs that family's features.
    """
    tags: Dict[str, List[str]] = {}
    for fam in spec.families:
        if fam.features and fam.test_filter:
            tags.setdefault(fam.test_filter, [])
            for f in sorted(fam.features):
                if f not in tags[fam.test_filter]:
                    tags[fam.test_filter].append(f)
    return tags


def build_registry(settings: Settings, jobs: Iterable[Job] = ()) -> QuarantineRegistry:
    """Static quarantines from the matrix plus the optional flake-tracking file."""
    registry = QuarantineRegistry()
    for j in jobs:
        if j.quarantined:
            registry.quarantine(j.id, j.quarantine_reason or "disabled")
    if settings.quarantine_file:
        registry.load(settings.quarantine_file)
    return registry


def plan_jobs(
    spec: MatrixSpec,
    *,
    families: Optional[Iterable[str]] = None,
    test_filter: Optional[str] = None,
    concurrency: Optional[int] = None,
    fail_fast: Optional[bool] = None,
) -> List[Job]:
    return expand(
        select_families(spec, families),
        test_filter=test_filter,
        concurrency=concurrency,
        fail_fast=fail_fast,
    )


def run_matrix(
    spec: MatrixSpec,
    *,
    settings: Settings,
    families: Optional[Iterable[str]] = None,
    test_filter: Optional[str] = None,
    concurrency: Optional[int] = None,
    fail_fast: Optional[bool] = None,
    repo_root: str | Path = ".",
    case_source: Optional[CaseSource] = None,
    test_package: str = "ibc-integration-test",
    provider: Optional[EnvironmentProvider] = None,
    registry: Optional[QuarantineRegistry] = None,
    prepare: bool = True,
    token: Optional[CancelToken] = None,
    on_result: Optional[ResultCallback] = None,
) -> MatrixRun:
    """
    Expand, filter quarantines, optionally prepare, then schedule every job.

    InvalidSpec and PrepareFailed are raised before any job runs. A
    cancellation during the prepare step returns a cancelled report instead.
    """
    token = token or CancelToken()
    jobs = plan_jobs(
        spec,
        families=families,
        test_filter=test_filter,
        concurrency=concurrency,
        fail_fast=fail_fast,
    )
    if not jobs:
        raise InvalidSpec(f"matrix '{spec.name}' produced no jobs")

    if registry is None:
        registry = build_registry(settings, jobs)
    if provider is None:
        backend = make_backend(settings.backend, index=settings.package_index, flake=settings.flake)
        provider = EnvironmentProvider(backend, work_root=settings.work_root)

    if case_source is None:
        case_source = CargoCaseSource(test_package, cwd=repo_root, tags=feature_tags(spec))

    if prepare:
        builds: List[List[str]] = []
        if isinstance(case_source, CargoCaseSource):
            builds = case_source.build_commands(j for j in jobs if not registry.is_quarantined(j.id))
        try:
            run_prepare(spec, cwd=repo_root, token=token, builds=builds)
        except RunCancelled as e:
            logger.warning("run cancelled during prepare: {}", e.reason)
            return MatrixRun(jobs=jobs, report=cancelled_report(jobs, registry, e.reason, on_result))

    runner = TestSuiteRunner(
        case_source,
        ProcessCaseExecutor(cwd=repo_root),
        case_timeout=settings.case_timeout,
    )
    scheduler = JobScheduler(
        provider,
        runner,
        registry,
        max_jobs=settings.max_jobs,
        acquire_retries=settings.acquire_retries,
        retry_delay=settings.retry_delay,
        on_result=on_result,
    )
    logger.info("running {} job(s) from matrix '{}' (max {} concurrent)", len(jobs), spec.name, settings.max_jobs)
    report = scheduler.run_all(jobs, token)
    return MatrixRun(jobs=jobs, report=report)
