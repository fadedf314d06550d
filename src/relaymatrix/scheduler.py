# scheduler.py
from __future__ import annotations

import os
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import ExitStack
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .environment import EnvironmentProvider
from .errors import EnvironmentUnavailable, RunCancelled
from .model import Environment, Job, JobOutcome, JobResult, RunReport
from .process import POLL_SECONDS, CancelToken
from .quarantine import QuarantineRegistry
from .suite import TestSuiteRunner

ResultCallback = Callable[[Job, JobResult], None]


class JobScheduler:
    """
    Runs expanded jobs with a global concurrency bound.

    Per job:  Pending -> Quarantined
              Pending -> Acquiring -> Fail (environment unavailable)
              Pending -> Acquiring -> Running -> Pass | Fail
              Pending | Acquiring | Running -> Cancelled
    """

    def __init__(
        self,
        provider: EnvironmentProvider,
        runner: TestSuiteRunner,
        registry: Optional[QuarantineRegistry] = None,
        *,
        max_jobs: Optional[int] = None,
        acquire_retries: int = 0,
        retry_delay: float = 5.0,
        on_result: Optional[ResultCallback] = None,
    ):
        if max_jobs is None:
            c = os.cpu_count() or 2
            max_jobs = max(1, c - 1)
        if max_jobs < 1:
            raise ValueError(f"max_jobs must be positive, got {max_jobs}")
        if acquire_retries < 0:
            raise ValueError(f"acquire_retries must be >= 0, got {acquire_retries}")

        self.provider = provider
        self.runner = runner
        self.registry = registry if registry is not None else QuarantineRegistry()
        self.max_jobs = max_jobs
        self.acquire_retries = acquire_retries
        self.retry_delay = retry_delay
        self.on_result = on_result

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    def quarantine_reason(self, job: Job) -> Optional[str]:
        if job.quarantined:
            return job.quarantine_reason or "disabled"
        entry = self.registry.entry_for(job.id)
        return entry.reason if entry is not None else None

    def _acquire(self, stack: ExitStack, job: Job, token: CancelToken) -> Tuple[Environment, int]:
        """
        Enter the job's environment on `stack`, retrying only acquisition.
        Returns (environment, attempts).
        """
        log = logger.bind(job=job.id)
        attempt = 0
        while True:
            attempt += 1
            token.raise_if_cancelled()
            try:
                return stack.enter_context(self.provider.acquire(job.environment, token)), attempt
            except EnvironmentUnavailable as e:
                if attempt > self.acquire_retries:
                    e.attempts = attempt
                    raise
                log.warning("acquire attempt {} failed, retrying in {}s: {}", attempt, self.retry_delay, e)
                if token.wait(self.retry_delay):
                    raise RunCancelled(token.reason or "run cancelled") from e

    def run_job(self, job: Job, token: Optional[CancelToken] = None) -> JobResult:
        """Acquire + run as one unit. Never raises; every outcome is a JobResult."""
        token = token or CancelToken()
        log = logger.bind(job=job.id)
        start = time.monotonic()
        attempts = 0

        try:
            with ExitStack() as stack:
                log.info("acquiring {}", job.environment)
                env, attempts = self._acquire(stack, job, token)
                log.info("running (filter={!r}, concurrency={})", job.test_filter, job.concurrency)
                result = self.runner.run(env, job, token)
            return replace(result, attempts=attempts, duration=time.monotonic() - start)

        except EnvironmentUnavailable as e:
            attempts = getattr(e, "attempts", attempts or 1)
            log.error("environment unavailable: {}", e)
            return JobResult(job.id, JobOutcome.FAIL, reason=f"environment unavailable: {e}",
                             attempts=attempts, duration=time.monotonic() - start)
        except RunCancelled as e:
            log.warning("cancelled: {}", e.reason)
            return JobResult(job.id, JobOutcome.CANCELLED, reason=e.reason,
                             attempts=attempts, duration=time.monotonic() - start)
        except Exception as e:
            log.exception("job crashed")
            return JobResult(job.id, JobOutcome.FAIL, reason=f"{type(e).__name__}: {e}",
                             attempts=attempts, duration=time.monotonic() - start)

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    def _record(self, results: Dict[int, JobResult], i: int, job: Job, result: JobResult) -> None:
        results[i] = result
        if self.on_result is not None:
            self.on_result(job, result)

    def run_all(self, jobs: Sequence[Job], token: Optional[CancelToken] = None) -> RunReport:
        token = token or CancelToken()
        jobs = list(jobs)
        results: Dict[int, JobResult] = {}
        pending: Deque[Tuple[int, Job]] = deque()

        for i, job in enumerate(jobs):
            reason = self.quarantine_reason(job)
            if reason is not None:
                logger.bind(job=job.id).info("quarantined: {}", reason)
                self._record(results, i, job, JobResult(job.id, JobOutcome.QUARANTINED, reason=reason))
            else:
                pending.append((i, job))

        in_flight: Dict[Future, Tuple[int, Job]] = {}

        with ThreadPoolExecutor(max_workers=self.max_jobs, thread_name_prefix="job") as pool:
            while pending or in_flight:
                # dispatch in expansion order while there is room
                while pending and len(in_flight) < self.max_jobs and not token.cancelled:
                    i, job = pending.popleft()
                    in_flight[pool.submit(self.run_job, job, token)] = (i, job)

                if token.cancelled and pending:
                    reason = f"{token.reason or 'run cancelled'} before dispatch"
                    while pending:
                        i, job = pending.popleft()
                        self._record(results, i, job, JobResult(job.id, JobOutcome.CANCELLED, reason=reason))

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), timeout=POLL_SECONDS, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    token.cancel("interrupted")
                    continue

                for fut in done:
                    i, job = in_flight.pop(fut)
                    self._record(results, i, job, fut.result())

        ordered: List[JobResult] = [results[i] for i in range(len(jobs))]
        return RunReport(results=tuple(ordered), cancelled=token.cancelled)
