# suite.py
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loguru import logger

from .cases import CaseSource
from .errors import CaseFailure, CaseTimeout, RunCancelled
from .model import (
    CaseOutcome,
    Environment,
    Job,
    JobOutcome,
    JobResult,
    TestCase,
    TestCaseResult,
)
from .process import CancelToken, run_process

CaseExecutor = Callable[[TestCase, Environment, Job, Optional[float], CancelToken], TestCaseResult]


# ----------------------------------------------------------------------
# Case selection
# ----------------------------------------------------------------------

def matches_filter(case: TestCase, pattern: str) -> bool:
    """
    Empty pattern matches everything. Otherwise a case matches when the
    pattern is a substring of its name, equals one of its tags, or
    glob-matches its name.
    """
    if not pattern:
        return True
    if pattern in case.name or pattern in case.tags:
        return True
    return fnmatchcase(case.name, pattern)


def missing_features(case: TestCase, job: Job) -> List[str]:
    return sorted(set(case.tags) - set(job.features))


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

class ProcessCaseExecutor:
    """Runs a case's command as a child process inside the job's environment."""

    def __init__(self, cwd: str | Path = "."):
        self.cwd = Path(cwd)

    def __call__(
        self,
        case: TestCase,
        env: Environment,
        job: Job,
        timeout: Optional[float],
        token: CancelToken,
    ) -> TestCaseResult:
        if not case.command:
            return TestCaseResult(case.name, CaseOutcome.FAIL, diagnostic="case has no command")

        start = time.monotonic()
        try:
            proc = run_process(
                case.command,
                cwd=self.cwd,
                env=env.process_env(job.env_vars),
                timeout=timeout,
                token=token,
                name=case.name,
            )
        except CaseTimeout as e:
            return TestCaseResult(case.name, CaseOutcome.FAIL, time.monotonic() - start, diagnostic=str(e))

        if proc.ok:
            return TestCaseResult(case.name, CaseOutcome.PASS, proc.duration)
        failure = CaseFailure(case=case.name, exit_code=proc.exit_code, output=proc.tail())
        return TestCaseResult(case.name, CaseOutcome.FAIL, proc.duration, diagnostic=str(failure))


class TestSuiteRunner:
    """
    Runs one job's cases against one acquired environment.

    - cases outside the job's filter are not reported
    - cases needing a feature the job lacks are reported skipped
    - at most `job.concurrency` cases execute at once
    - results are ordered by case name
    """
    __test__ = False

    def __init__(
        self,
        source: Optional[CaseSource] = None,
        executor: Optional[CaseExecutor] = None,
        *,
        case_timeout: Optional[float] = None,
    ):
        self.source = source
        self.executor: CaseExecutor = executor or ProcessCaseExecutor()
        self.case_timeout = case_timeout

    def _collect(self, env: Environment, job: Job, token: CancelToken) -> List[TestCase]:
        if job.cases is not None:
            return list(job.cases)
        if self.source is None:
            raise ValueError(f"job '{job.id}' declares no cases and the runner has no case source")
        return self.source.cases(env, job, token)

    def _select(self, cases: List[TestCase], job: Job) -> Tuple[List[TestCase], List[TestCaseResult]]:
        eligible: List[TestCase] = []
        skipped: List[TestCaseResult] = []
        names = set()
        for c in cases:
            if c.name in names:
                raise ValueError(f"job '{job.id}' has duplicate case '{c.name}'")
            names.add(c.name)
            if not matches_filter(c, job.test_filter):
                continue
            missing = missing_features(c, job)
            if missing:
                skipped.append(
                    TestCaseResult(c.name, CaseOutcome.SKIPPED, diagnostic=f"requires features {missing}")
                )
            else:
                eligible.append(c)
        return eligible, skipped

    def run(self, env: Environment, job: Job, token: Optional[CancelToken] = None) -> JobResult:
        token = token or CancelToken()
        log = logger.bind(job=job.id)
        start = time.monotonic()

        try:
            cases = self._collect(env, job, token)
        except (CaseFailure, CaseTimeout) as e:
            log.error("case discovery failed: {}", e)
            return JobResult(job.id, JobOutcome.FAIL, reason=f"case discovery failed: {e}",
                             duration=time.monotonic() - start)

        eligible, results = self._select(cases, job)
        if not eligible and not results:
            log.warning("filter {!r} matched no cases", job.test_filter)

        stop = threading.Event()  # fail-fast latch

        def run_one(case: TestCase) -> TestCaseResult:
            clog = log.bind(case=case.name)
            if stop.is_set():
                return TestCaseResult(case.name, CaseOutcome.SKIPPED, diagnostic="not run: fail-fast")
            token.raise_if_cancelled()

            clog.info("case started")
            try:
                result = self.executor(case, env, job, self.case_timeout, token)
            except RunCancelled:
                raise
            except Exception as e:
                # a broken case must not take its siblings down
                result = TestCaseResult(case.name, CaseOutcome.FAIL, diagnostic=f"{type(e).__name__}: {e}")

            if result.outcome == CaseOutcome.FAIL:
                first = (result.diagnostic or "").splitlines()
                clog.error("case failed: {}", first[0] if first else "no diagnostic")
                if job.fail_fast:
                    stop.set()
            else:
                clog.info("case {} ({:.2f}s)", result.outcome.value, result.duration)
            return result

        cancelled: Optional[RunCancelled] = None
        if eligible:
            with ThreadPoolExecutor(max_workers=job.concurrency, thread_name_prefix=f"case-{job.index}") as pool:
                futures = [pool.submit(run_one, c) for c in eligible]
                for fut in futures:
                    try:
                        results.append(fut.result())
                    except RunCancelled as e:
                        cancelled = cancelled or e
        if cancelled is not None:
            raise cancelled

        results.sort(key=lambda r: r.name)
        failed = [r for r in results if r.outcome == CaseOutcome.FAIL]
        outcome = JobOutcome.FAIL if failed else JobOutcome.PASS
        reason = f"{len(failed)} case(s) failed" if failed else None
        return JobResult(
            job_id=job.id,
            outcome=outcome,
            cases=tuple(results),
            reason=reason,
            duration=time.monotonic() - start,
        )
