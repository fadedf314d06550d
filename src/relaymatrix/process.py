# process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from loguru import logger

from .errors import CaseTimeout, RunCancelled

# How long a terminated process group gets before SIGKILL.
KILL_GRACE_SECONDS = 5.0
# Poll interval for cancellation while a child is running.
POLL_SECONDS = 0.1
# Output tail kept in diagnostics.
OUTPUT_TAIL = 4000


class CancelToken:
    """
    Run-level cancellation flag shared by scheduler, provider and runner.

    Child tokens observe their parent: cancelling a run cancels every job,
    cancelling one job's token (fail-fast) leaves siblings alone.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self._reason())

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True early if cancelled."""
        deadline = time.monotonic() + seconds
        while True:
            if self.cancelled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, POLL_SECONDS))

    def _reason(self) -> str:
        if self._event.is_set():
            return self.reason or "run cancelled"
        if self._parent is not None:
            return self._parent._reason()
        return "run cancelled"


@dataclass(frozen=True)
class ProcessResult:
    cmd: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, limit: int = OUTPUT_TAIL) -> str:
        parts = [p for p in (self.stdout[-limit:], self.stderr[-limit:]) if p.strip()]
        return "\n".join(parts)


def _display(cmd: Union[str, Sequence[str]]) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


def _terminate(proc: subprocess.Popen) -> None:
    """Terminate the child's whole process group; escalate to SIGKILL."""
    if proc.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            return
        proc.wait()


def run_process(
    cmd: Union[str, Sequence[str]],
    *,
    cwd: Union[str, Path, None] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    token: Optional[CancelToken] = None,
    name: Optional[str] = None,
) -> ProcessResult:
    """
    Run a child process as a scoped resource.

    The child is started in its own session so the whole process group can be
    terminated. It is always reaped before this function returns.

    Raises:
      CaseTimeout   if `timeout` elapses (child terminated)
      RunCancelled  if `token` is cancelled (child terminated)
    """
    display = _display(cmd)
    shell = isinstance(cmd, str)
    if token is not None:
        token.raise_if_cancelled()

    start = time.monotonic()
    proc = subprocess.Popen(
        cmd if shell else list(cmd),
        shell=shell,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    logger.debug("spawned pid={} cmd={}", proc.pid, display)

    out_chunks: List[str] = []
    err_chunks: List[str] = []
    try:
        while True:
            try:
                out, err = proc.communicate(timeout=POLL_SECONDS)
                out_chunks.append(out or "")
                err_chunks.append(err or "")
                break
            except subprocess.TimeoutExpired:
                pass

            if token is not None and token.cancelled:
                _terminate(proc)
                raise RunCancelled(token._reason())
            if timeout is not None and time.monotonic() - start > timeout:
                _terminate(proc)
                raise CaseTimeout(case=name or display, timeout=timeout)
    finally:
        # exceptions above (or KeyboardInterrupt) must never leave an orphan
        if proc.poll() is None:
            _terminate(proc)

    return ProcessResult(
        cmd=display,
        exit_code=proc.returncode,
        stdout="".join(out_chunks),
        stderr="".join(err_chunks),
        duration=time.monotonic() - start,
    )
