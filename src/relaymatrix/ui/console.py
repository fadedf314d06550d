"""Human-facing run output: plan, per-job verdicts, summary and errors."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import List, Optional

from ..model import CaseOutcome, Job, JobOutcome, JobResult, RunReport
from ..quarantine import QuarantineEntry

STATUS_LABELS = {
    JobOutcome.PASS: "PASS",
    JobOutcome.FAIL: "FAIL",
    JobOutcome.QUARANTINED: "QUARANTINED",
    JobOutcome.CANCELLED: "CANCELLED",
}


class Console:
    """
    Prints to stdout/stderr for people watching a run. Diagnostics for
    machines go through the log channel instead.

    With `debug`, full case diagnostics and tracebacks are shown.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        # one lock for the whole block so job summaries never interleave
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        matrix: str,
        source: str,
        job_count: int,
        max_jobs: int,
        commit: Optional[str] = None,
    ) -> None:
        lines = ["\nRUN STARTED", f"Matrix: {matrix}", f"Source: {source}"]
        if commit:
            lines.append(f"Commit: {commit[:12]}")
        lines += [f"Jobs: {job_count}", f"Max concurrent jobs: {max_jobs}", ""]
        self._print(*lines)

    def print_plan(self, jobs: List[Job], quarantined: dict[str, str]) -> None:
        """Print the expanded job list."""
        self.print_header("PLAN")
        for j in jobs:
            feats = ",".join(sorted(j.features)) or "-"
            line = (
                f"  {j.index + 1:>3}. {j.id}  env={j.environment} features={feats} "
                f"filter={j.test_filter or '*'} concurrency={j.concurrency}"
            )
            if j.id in quarantined:
                line += f"  (quarantined: {quarantined[j.id]})"
            self._print(line)

    def print_job_result(self, job: Job, result: JobResult) -> None:
        """Print one job's terminal state as soon as it is known."""
        label = STATUS_LABELS[result.outcome]
        counts = result.counts()
        lines = [f"JOB {label}: {job.id}"]
        if result.cases:
            lines.append(
                f"  cases: {counts['pass']} passed, {counts['fail']} failed, {counts['skipped']} skipped"
            )
        if result.reason and result.outcome != JobOutcome.PASS:
            lines.append(f"  reason: {result.reason}")
        for c in result.cases:
            if c.outcome == CaseOutcome.FAIL:
                lines.append(f"  FAILED {c.name}")
                if c.diagnostic:
                    diag = c.diagnostic if self.debug else c.diagnostic.splitlines()[0]
                    lines.extend(f"    {d}" for d in diag.splitlines())
        self._print(*lines)

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in report.results:
            extra = f" ({r.reason})" if r.reason and r.outcome != JobOutcome.PASS else ""
            lines.append(f"  {r.job_id}: {STATUS_LABELS[r.outcome]}{extra}")
        lines.append("")
        n_fail = len(report.by_outcome(JobOutcome.FAIL))
        n_cancel = len(report.by_outcome(JobOutcome.CANCELLED))
        n_quar = len(report.by_outcome(JobOutcome.QUARANTINED))
        n_pass = len(report.by_outcome(JobOutcome.PASS))
        lines.append(
            f"{n_pass} passed, {n_fail} failed, {n_cancel} cancelled, {n_quar} quarantined"
        )
        lines.append("STATUS: success" if report.success else "STATUS: failure")
        self._print(*lines)

    def print_quarantine(self, entries: List[QuarantineEntry]) -> None:
        self.print_header("QUARANTINE")
        if not entries:
            self._print("  (empty)")
        for e in entries:
            self._print(f"  {e.job}: {e.reason}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Error block on stderr: title, message, indented details, then a hint."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        if not self.debug:
            self._print(f"Error: {exc}", err=True)
            return
        with self._lock:
            traceback.print_exception(type(exc), exc, exc.__traceback__)

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


# set by the CLI group; library callers get a plain Console
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
