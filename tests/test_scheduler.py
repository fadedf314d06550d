from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from conftest import FakeBackend, ScriptedExecutor, SpyProvider, make_job
from relaymatrix.dsl import case
from relaymatrix.model import JobOutcome
from relaymatrix.process import CancelToken
from relaymatrix.quarantine import QuarantineRegistry
from relaymatrix.scheduler import JobScheduler
from relaymatrix.suite import TestSuiteRunner


def _jobs(*packages, cases=None):
    return [
        make_job(f"integration-test[gaiad={p}]", package=p, cases=cases or [case("test_transfer")], index=i)
        for i, p in enumerate(packages)
    ]


def _scheduler(provider, executor=None, **kw):
    return JobScheduler(provider, TestSuiteRunner(executor=executor or ScriptedExecutor()), **kw)


def test_one_missing_environment_fails_only_its_job(tmp_path):
    provider = SpyProvider(FakeBackend(missing=["gaia5"]), work_root=tmp_path)
    jobs = _jobs("gaia4", "gaia5", "gaia6", "gaia7", "gaia8")

    report = _scheduler(provider, max_jobs=3).run_all(jobs)

    outcomes = {r.job_id: r.outcome for r in report.results}
    assert outcomes.pop("integration-test[gaiad=gaia5]") == JobOutcome.FAIL
    assert set(outcomes.values()) == {JobOutcome.PASS}
    assert report.get("integration-test[gaiad=gaia5]").reason.startswith("environment unavailable")
    assert not report.success
    assert provider.active() == []


def test_report_follows_expansion_order(tmp_path):
    provider = SpyProvider(FakeBackend(), work_root=tmp_path)
    jobs = _jobs("gaia5", "gaia6", "gaia7")
    report = _scheduler(provider, ScriptedExecutor(delay=0.05), max_jobs=3).run_all(jobs)

    assert [r.job_id for r in report.results] == [j.id for j in jobs]
    assert report.success


def test_quarantined_jobs_never_acquire(tmp_path):
    provider = SpyProvider(FakeBackend(), work_root=tmp_path)
    registry = QuarantineRegistry()
    registry.quarantine("integration-test[gaiad=gaia7]", "flaky upgrade test")
    jobs = _jobs("gaia5", "gaia6", "gaia7")

    report = _scheduler(provider, registry=registry, max_jobs=2).run_all(jobs)

    assert report.get("integration-test[gaiad=gaia7]").outcome == JobOutcome.QUARANTINED
    assert report.get("integration-test[gaiad=gaia7]").reason == "flaky upgrade test"
    assert "gaia7" not in provider.acquired
    assert report.success


def test_statically_disabled_job_is_quarantined(tmp_path):
    provider = SpyProvider(FakeBackend(), work_root=tmp_path)
    job = replace(make_job("model-based-test+mbt", package="gaia6"), quarantined=True, quarantine_reason="flaky")
    report = _scheduler(provider).run_all([job])

    assert report.results[0].outcome == JobOutcome.QUARANTINED
    assert provider.acquired == []


def test_acquisition_is_retried(tmp_path):
    backend = FakeBackend(flaky={"gaia6": 2})
    provider = SpyProvider(backend, work_root=tmp_path)

    result = _scheduler(provider, acquire_retries=2, retry_delay=0).run_job(_jobs("gaia6")[0])

    assert result.outcome == JobOutcome.PASS
    assert result.attempts == 3


def test_retries_exhausted(tmp_path):
    backend = FakeBackend(flaky={"gaia6": 5})
    provider = SpyProvider(backend, work_root=tmp_path)

    result = _scheduler(provider, acquire_retries=1, retry_delay=0).run_job(_jobs("gaia6")[0])

    assert result.outcome == JobOutcome.FAIL
    assert result.attempts == 2
    assert "cache timeout" in result.reason


def test_suite_failure_is_not_retried(tmp_path):
    backend = FakeBackend()
    provider = SpyProvider(backend, work_root=tmp_path)
    job = _jobs("gaia6", cases=[case("test_fail_packet")])[0]

    result = _scheduler(provider, acquire_retries=3, retry_delay=0).run_job(job)

    assert result.outcome == JobOutcome.FAIL
    assert result.attempts == 1
    assert provider.acquired == ["gaia6"]


def test_on_result_sees_every_job(tmp_path):
    provider = SpyProvider(FakeBackend(missing=["gaia5"]), work_root=tmp_path)
    seen = []
    lock = threading.Lock()

    def on_result(job, result):
        with lock:
            seen.append((job.id, result.outcome))

    jobs = _jobs("gaia5", "gaia6", "gaia7")
    _scheduler(provider, max_jobs=2, on_result=on_result).run_all(jobs)

    assert sorted(seen) == sorted(
        [
            ("integration-test[gaiad=gaia5]", JobOutcome.FAIL),
            ("integration-test[gaiad=gaia6]", JobOutcome.PASS),
            ("integration-test[gaiad=gaia7]", JobOutcome.PASS),
        ]
    )


def test_cancel_with_jobs_in_flight_and_pending(tmp_path):
    provider = SpyProvider(FakeBackend(), work_root=tmp_path)
    ex = ScriptedExecutor(gate=threading.Event())
    token = CancelToken()
    jobs = _jobs("gaia4", "gaia5", "gaia6", "gaia7", "gaia8")

    def cancel_after_three_started():
        for _ in range(3):
            ex.started.acquire()
        token.cancel("interrupted")

    t = threading.Thread(target=cancel_after_three_started)
    t.start()
    report = _scheduler(provider, ex, max_jobs=3).run_all(jobs, token)
    t.join()

    assert report.cancelled
    assert not report.success
    assert [r.outcome for r in report.results] == [JobOutcome.CANCELLED] * 5
    before_dispatch = [r for r in report.results if r.reason and r.reason.endswith("before dispatch")]
    assert [r.job_id for r in before_dispatch] == [j.id for j in jobs[3:]]
    assert sorted(provider.acquired) == ["gaia4", "gaia5", "gaia6"]
    assert provider.active() == []
    assert provider.pins() == {}


def test_scheduler_argument_validation(provider):
    runner = TestSuiteRunner(executor=ScriptedExecutor())
    with pytest.raises(ValueError):
        JobScheduler(provider, runner, max_jobs=0)
    with pytest.raises(ValueError):
        JobScheduler(provider, runner, acquire_retries=-1)
