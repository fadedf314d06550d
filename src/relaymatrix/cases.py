# cases.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

from loguru import logger

from .errors import CaseFailure
from .model import Environment, Job, TestCase
from .process import CancelToken, run_process


class CaseSource:
    """Produces the test cases a job can run inside its environment."""

    def cases(self, env: Environment, job: Job, token: Optional[CancelToken] = None) -> List[TestCase]:
        raise NotImplementedError


class StaticCaseSource(CaseSource):
    def __init__(self, cases: Sequence[TestCase]):
        self._cases = list(cases)

    def cases(self, env: Environment, job: Job, token: Optional[CancelToken] = None) -> List[TestCase]:
        return list(self._cases)


class CargoCaseSource(CaseSource):
    """
    Discover integration tests from a cargo test binary.

    Build:    cargo test -p <package> --features <flags> --no-fail-fast --no-run
    Listing:  cargo test -p <package> --features <flags> -- --list
    Each case: cargo test -p <package> --features <flags> -- --exact <name> --nocapture

    `tags` maps a test path fragment to the feature it belongs to, e.g.
    {"ordered_channel": "ordered"}.
    """

    def __init__(
        self,
        package: str = "ibc-integration-test",
        *,
        cwd: str | Path = ".",
        cargo: str = "cargo",
        tags: Optional[Dict[str, Union[str, Sequence[str]]]] = None,
        list_timeout: float = 3600.0,
    ):
        self.package = package
        self.cwd = Path(cwd)
        self.cargo = cargo
        self.tags = dict(tags or {})
        self.list_timeout = list_timeout

    def _base(self, job: Job) -> List[str]:
        return cargo_test_command(self.cargo, self.package, job.features)

    def build_commands(self, jobs: Iterable[Job]) -> List[List[str]]:
        """One `--no-run` build per distinct feature set, in first-seen job order."""
        seen: Set[frozenset] = set()
        out: List[List[str]] = []
        for job in jobs:
            if job.cases is not None or job.features in seen:
                continue
            seen.add(job.features)
            out.append(self._base(job) + ["--no-fail-fast", "--no-run"])
        return out

    def _tags_for(self, name: str) -> frozenset:
        out = set()
        for fragment, tags in self.tags.items():
            if fragment in name:
                out.update([tags] if isinstance(tags, str) else tags)
        return frozenset(out)

    def cases(self, env: Environment, job: Job, token: Optional[CancelToken] = None) -> List[TestCase]:
        proc = run_process(
            self._base(job) + ["--", "--list"],
            cwd=self.cwd,
            env=env.process_env(job.env_vars),
            timeout=self.list_timeout,
            token=token,
            name=f"{self.package} --list",
        )
        if not proc.ok:
            raise CaseFailure(case="<list>", exit_code=proc.exit_code, output=proc.tail())

        names = parse_test_list(proc.stdout)
        logger.bind(job=job.id).debug("cargo listed {} cases", len(names))
        return [
            TestCase(
                name=n,
                command=tuple(self._base(job) + ["--", "--exact", n, "--nocapture", "--test-threads=1"]),
                tags=self._tags_for(n),
            )
            for n in names
        ]


def parse_test_list(output: str) -> List[str]:
    """Parse `cargo test -- --list` output ("path::name: test" lines)."""
    names: List[str] = []
    for line in output.splitlines():
        line = line.strip()
        if line.endswith(": test"):
            names.append(line[: -len(": test")])
    return sorted(set(names))


def cargo_test_command(cargo: str, package: str, features: Iterable[str] = ()) -> List[str]:
    cmd = [cargo, "test", "-p", package]
    if features:
        cmd += ["--features", ",".join(sorted(features))]
    return cmd
