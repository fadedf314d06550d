# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from relaymatrix.errors import InvalidSpec, PrepareFailed, RunCancelled
from relaymatrix.log import configure_logging
from relaymatrix.process import CancelToken
from relaymatrix.runner import (
    build_registry,
    changed_paths,
    is_relevant,
    load_matrix,
    locate_repo,
    plan_jobs,
    run_matrix,
)
from relaymatrix.settings import Settings
from relaymatrix.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


def find_matrix_files() -> list[Path]:
    """Find matrix definition files in the current directory."""
    matrix_files = []
    current_dir = Path(".")

    default_matrix = current_dir / "relaymatrix_matrix.py"
    if default_matrix.exists():
        matrix_files.append(default_matrix)

    for path in current_dir.glob("*_matrix.py"):
        if path != default_matrix:
            matrix_files.append(path)

    return sorted(matrix_files)


def discover_matrix(matrix_arg: str | None) -> Path:
    """
    Resolve the matrix file from the --matrix argument or the current directory.

    Exits with EXIT_INVALID when no file, or more than one candidate, is found.
    """
    console = get_console()

    if matrix_arg:
        matrix_path = Path(matrix_arg)
        if not matrix_path.exists() and matrix_path.suffix != ".py":
            matrix_path = Path(str(matrix_path) + ".py")
        if not matrix_path.exists():
            console.print_error(
                "Matrix file not found",
                f"Could not find matrix file: {matrix_arg}",
                suggestion="Create a matrix file or specify a different path:\n  relaymatrix run --matrix my_matrix.py",
            )
            sys.exit(EXIT_INVALID)
        return matrix_path

    matrix_files = find_matrix_files()

    if len(matrix_files) == 0:
        console.print_error(
            "No matrix file found",
            "Could not find any matrix files.",
            details=["Looked for:", "  relaymatrix_matrix.py", "  *_matrix.py"],
            suggestion="Specify a matrix explicitly:\n  relaymatrix run --matrix my_matrix.py",
        )
        sys.exit(EXIT_INVALID)

    if len(matrix_files) > 1:
        console.print_error(
            "Multiple matrix files found",
            "Found multiple matrix files. Please specify which one to use:",
            details=[f"  {f}" for f in matrix_files],
            suggestion="Specify a matrix explicitly:\n  relaymatrix run --matrix relaymatrix_matrix.py",
        )
        sys.exit(EXIT_INVALID)

    return matrix_files[0]


@contextmanager
def cancel_on_signals(token: CancelToken) -> Iterator[None]:
    """SIGINT/SIGTERM cancel the run instead of killing the process mid-job."""
    console = get_console()

    def _handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling run...")
        token.cancel(f"received signal {signum}")

    previous = {}
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _handler)
    except ValueError:
        # not in the main thread; rely on KeyboardInterrupt handling instead
        pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _load(ctx, matrix: str | None):
    console = get_console()
    matrix_path = discover_matrix(matrix)
    try:
        return matrix_path, load_matrix(matrix_path)
    except Exception as e:
        console.print_error(
            "Failed to load matrix",
            f"Could not load matrix from {matrix_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--log-level", default=None, help="Diagnostics log level (default: RELAYMATRIX_LOG_LEVEL or INFO)")
@click.option("--json-logs/--text-logs", default=None, help="Emit diagnostics as JSON lines")
@click.pass_context
def cli(ctx, debug, log_level, json_logs):
    """relaymatrix: cross-version integration test matrix runner."""
    console = Console(debug=debug)
    set_console(console)

    settings = Settings.from_env().override(
        log_level=("DEBUG" if debug and log_level is None else log_level),
        json_logs=json_logs,
    )
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--matrix", default=None, help="Matrix file path (defaults to relaymatrix_matrix.py if present)")
@click.option("--family", "families", multiple=True, help="Only run this job family (repeatable)")
@click.option("--jobs", "max_jobs", default=None, type=click.IntRange(min=1), help="Max jobs running at once")
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Override per-job case concurrency")
@click.option("--filter", "test_filter", default=None, help="Override every job's test filter")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Abort a job's remaining cases after its first failure")
@click.option("--case-timeout", default=None, type=float, help="Per-case timeout in seconds")
@click.option("--retries", default=None, type=click.IntRange(min=0), help="Environment acquisition retries per job")
@click.option("--backend", type=click.Choice(["static", "nix"]), default=None, help="Environment backend")
@click.option("--index", "package_index", default=None, help="Package index JSON (static backend)")
@click.option("--flake", default=None, help="Flake reference (nix backend)")
@click.option("--quarantine-file", default=None, help="JSON list of quarantined job ids")
@click.option("--test-package", default="ibc-integration-test", show_default=True, help="Cargo package holding the tests")
@click.option("--prepare/--no-prepare", default=True, show_default=True, help="Run the matrix prepare commands first")
@click.option("--git-diff/--no-git-diff", default=False, help="Skip the run when no changed file matches the matrix paths")
@click.option("--compare-ref", default="origin/master", show_default=True, help="Git ref to diff against")
@click.option("--repo-root", default=None, help="Directory inside the repository under test (default: current directory)")
@click.pass_context
def run(ctx, matrix, families, max_jobs, concurrency, test_filter, fail_fast, case_timeout, retries,
        backend, package_index, flake, quarantine_file, test_package, prepare, git_diff, compare_ref, repo_root):
    """Run a test matrix."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(
        max_jobs=max_jobs,
        case_timeout=case_timeout,
        acquire_retries=retries,
        backend=backend,
        package_index=package_index,
        flake=flake,
        quarantine_file=quarantine_file,
    )

    matrix_path, spec = _load(ctx, matrix)
    root, commit = locate_repo(repo_root or ".")

    if git_diff:
        try:
            changed = changed_paths(compare_ref, cwd=root)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_error("Git diff failed", str(e), suggestion="Run without --git-diff.")
            sys.exit(EXIT_INVALID)
        relevant, hits = is_relevant(spec, changed)
        if not relevant:
            console.print_info(f"No changed files match {spec.paths}; nothing to run.")
            sys.exit(EXIT_OK)
        console.print_debug(f"relevant changes: {hits}")

    token = CancelToken()
    try:
        jobs = plan_jobs(spec, families=families, test_filter=test_filter,
                         concurrency=concurrency, fail_fast=fail_fast)
        console.print_run_started(
            matrix=spec.name,
            source=matrix_path.name,
            job_count=len(jobs),
            max_jobs=settings.max_jobs,
            commit=commit,
        )

        with cancel_on_signals(token):
            result = run_matrix(
                spec,
                settings=settings,
                families=families,
                test_filter=test_filter,
                concurrency=concurrency,
                fail_fast=fail_fast,
                repo_root=root,
                test_package=test_package,
                prepare=prepare,
                token=token,
                on_result=console.print_job_result,
            )
    except (InvalidSpec, PrepareFailed) as e:
        output = getattr(e, "output", "")
        console.print_error("Run aborted before any job", str(e), details=[output] if output else None)
        sys.exit(EXIT_INVALID)
    except (FileNotFoundError, ValueError) as e:
        console.print_error("Configuration error", str(e))
        sys.exit(EXIT_INVALID)
    except RunCancelled as e:
        console.print_error("Run cancelled", e.reason)
        sys.exit(EXIT_CANCELLED)

    console.print_results(result.report)

    if result.report.cancelled:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_OK if result.report.success else EXIT_FAILED)


@cli.command()
@click.option("--matrix", default=None, help="Matrix file path (defaults to relaymatrix_matrix.py if present)")
@click.option("--family", "families", multiple=True, help="Only show this job family (repeatable)")
@click.option("--filter", "test_filter", default=None, help="Override every job's test filter")
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Override per-job case concurrency")
@click.option("--quarantine-file", default=None, help="JSON list of quarantined job ids")
@click.pass_context
def plan(ctx, matrix, families, test_filter, concurrency, quarantine_file):
    """Show the expanded jobs without running them."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(quarantine_file=quarantine_file)
    _, spec = _load(ctx, matrix)

    try:
        jobs = plan_jobs(spec, families=families, test_filter=test_filter, concurrency=concurrency)
        registry = build_registry(settings, jobs)
    except (InvalidSpec, FileNotFoundError) as e:
        console.print_error("Invalid matrix", str(e))
        sys.exit(EXIT_INVALID)

    quarantined = {}
    for j in jobs:
        entry = registry.entry_for(j.id)
        if entry is not None:
            quarantined[j.id] = entry.reason
    console.print_plan(jobs, quarantined)


@cli.command()
@click.option("--matrix", default=None, help="Matrix file path (defaults to relaymatrix_matrix.py if present)")
@click.option("--quarantine-file", default=None, help="JSON list of quarantined job ids")
@click.pass_context
def quarantine(ctx, matrix, quarantine_file):
    """List quarantined jobs (matrix-declared plus quarantine file)."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(quarantine_file=quarantine_file)
    _, spec = _load(ctx, matrix)

    try:
        registry = build_registry(settings, plan_jobs(spec))
    except (InvalidSpec, FileNotFoundError) as e:
        console.print_error("Invalid matrix", str(e))
        sys.exit(EXIT_INVALID)
    console.print_quarantine(registry.list())


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
