from __future__ import annotations

import threading
import time

import pytest

from relaymatrix.errors import CaseTimeout, RunCancelled
from relaymatrix.process import CancelToken, run_process


def test_exit_code_and_output():
    res = run_process(["sh", "-c", "echo out; echo err >&2; exit 4"])
    assert res.exit_code == 4
    assert not res.ok
    assert res.stdout.strip() == "out"
    assert res.stderr.strip() == "err"
    assert "out" in res.tail() and "err" in res.tail()


def test_shell_string_and_env(tmp_path):
    res = run_process("echo $GREETING > hello.txt", cwd=tmp_path, env={"GREETING": "hi", "PATH": "/usr/bin:/bin"})
    assert res.ok
    assert (tmp_path / "hello.txt").read_text().strip() == "hi"


def test_timeout_terminates_child():
    start = time.monotonic()
    with pytest.raises(CaseTimeout) as ei:
        run_process(["sleep", "30"], timeout=0.3, name="slow_case")
    assert ei.value.case == "slow_case"
    assert time.monotonic() - start < 10


def test_cancel_terminates_child():
    token = CancelToken()
    threading.Timer(0.3, token.cancel, args=("stop requested",)).start()

    start = time.monotonic()
    with pytest.raises(RunCancelled) as ei:
        run_process(["sleep", "30"], token=token)
    assert ei.value.reason == "stop requested"
    assert time.monotonic() - start < 10


def test_already_cancelled_never_spawns(tmp_path):
    token = CancelToken()
    token.cancel()
    with pytest.raises(RunCancelled):
        run_process(["touch", str(tmp_path / "marker")], token=token)
    assert not (tmp_path / "marker").exists()


def test_child_token_follows_parent():
    parent = CancelToken()
    child = parent.child()
    sibling = parent.child()

    child.cancel("fail-fast")
    assert child.cancelled
    assert not sibling.cancelled
    assert not parent.cancelled

    parent.cancel("interrupted")
    assert sibling.cancelled
    with pytest.raises(RunCancelled, match="interrupted"):
        sibling.raise_if_cancelled()


def test_wait_returns_early_on_cancel():
    token = CancelToken()
    assert token.wait(0.05) is False

    threading.Timer(0.1, token.cancel).start()
    start = time.monotonic()
    assert token.wait(10) is True
    assert time.monotonic() - start < 5
