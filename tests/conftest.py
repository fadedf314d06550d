from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
from loguru import logger

from relaymatrix.environment import Backend, EnvironmentProvider
from relaymatrix.errors import EnvironmentUnavailable, RunCancelled
from relaymatrix.log import configure_logging
from relaymatrix.model import (
    CaseOutcome,
    Environment,
    EnvironmentRef,
    Job,
    ResolvedPackage,
    TestCase,
    TestCaseResult,
)


@pytest.fixture(autouse=True)
def _diagnostics():
    configure_logging("DEBUG", sink=sys.stderr)
    yield
    logger.remove()


class FakeBackend(Backend):
    """In-memory package index. `missing` packages never resolve."""

    name = "fake"

    def __init__(self, missing: Iterable[str] = (), flaky: Optional[Dict[str, int]] = None):
        self.missing = set(missing)
        self.flaky = dict(flaky or {})  # package -> number of failures before success
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def resolve(self, package, token=None):
        with self._lock:
            self.calls.append(package)
            if self.flaky.get(package, 0) > 0:
                self.flaky[package] -= 1
                raise EnvironmentUnavailable(ref=package, package=package, message="cache timeout")
        if package in self.missing:
            raise EnvironmentUnavailable(ref=package, package=package, message="no such package")
        return ResolvedPackage(
            name=package,
            version="1.0.0",
            path=f"/fake/{package}",
            executables=((package, f"/fake/{package}/bin/{package}"),),
            content=f"hash-{package}",
        )


class SpyProvider(EnvironmentProvider):
    """Counts acquisitions; otherwise a real provider."""

    def __init__(self, backend, **kw):
        super().__init__(backend, **kw)
        self.acquired: List[str] = []
        self._spy_lock = threading.Lock()

    def acquire(self, ref, token=None):
        with self._spy_lock:
            self.acquired.append(str(ref))
        return super().acquire(ref, token)


class ScriptedExecutor:
    """
    Fake case executor.

    - names containing "fail" fail, everything else passes
    - `delay` seconds of simulated work, cancellable
    - tracks the peak number of simultaneously executing cases
    """

    def __init__(self, delay: float = 0.0, gate: Optional[threading.Event] = None):
        self.delay = delay
        self.gate = gate
        self.calls: List[str] = []
        self.active = 0
        self.peak = 0
        self.started = threading.Semaphore(0)
        self._lock = threading.Lock()

    def __call__(self, case: TestCase, env: Environment, job: Job, timeout, token) -> TestCaseResult:
        with self._lock:
            self.calls.append(case.name)
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.release()
        try:
            if self.gate is not None:
                while not self.gate.is_set():
                    if token.cancelled:
                        raise RunCancelled("run cancelled")
                    time.sleep(0.01)
            elif self.delay:
                if token.wait(self.delay):
                    raise RunCancelled("run cancelled")
        finally:
            with self._lock:
                self.active -= 1

        if "fail" in case.name:
            return TestCaseResult(case.name, CaseOutcome.FAIL, self.delay, diagnostic="assertion failed")
        return TestCaseResult(case.name, CaseOutcome.PASS, self.delay)


def make_job(
    jid: str = "job",
    *,
    package: str = "gaia6",
    cases: Optional[List[TestCase]] = None,
    features: Iterable[str] = (),
    test_filter: str = "",
    concurrency: int = 1,
    fail_fast: bool = False,
    index: int = 0,
) -> Job:
    return Job(
        id=jid,
        family=jid.split("[")[0],
        environment=EnvironmentRef(package),
        features=frozenset(features),
        test_filter=test_filter,
        concurrency=concurrency,
        index=index,
        fail_fast=fail_fast,
        cases=tuple(cases) if cases is not None else None,
    )


def make_env(workdir: Path, package: str = "gaia6") -> Environment:
    return Environment(
        ref=EnvironmentRef(package),
        digest="0" * 64,
        packages=(),
        workdir=workdir,
        lease="test-lease",
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def provider(backend, tmp_path):
    return SpyProvider(backend, work_root=tmp_path / "work")
