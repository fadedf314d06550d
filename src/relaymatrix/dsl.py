# src/relaymatrix/dsl.py
from __future__ import annotations

import shlex
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .model import JobFamily, MatrixAxis, MatrixSpec, TestCase


# ---------------------------------------------------------------------
# Axis / case helpers
# ---------------------------------------------------------------------

def axis(name: str, variants: Iterable[str], *, kind: str = "env") -> MatrixAxis:
    """Create a matrix axis. Validation happens at expansion time."""
    return MatrixAxis(name=name, variants=tuple(str(v) for v in variants), kind=kind)


def features(name: str, variants: Iterable[str]) -> MatrixAxis:
    """Axis whose variant is added to each job's feature flags."""
    return axis(name, variants, kind="feature")


def case(
    name: str,
    cmd: Union[str, Sequence[str], None] = None,
    *,
    tags: Iterable[str] = (),
) -> TestCase:
    """Create a test case. A string command is split with shlex."""
    if cmd is None:
        command: tuple = ()
    elif isinstance(cmd, str):
        command = tuple(shlex.split(cmd))
    else:
        command = tuple(cmd)
    return TestCase(name=name, command=command, tags=frozenset(tags))


# ---------------------------------------------------------------------
# Family helper
# ---------------------------------------------------------------------

def family(
    name: str,
    *axes: MatrixAxis,
    environment: Optional[str] = None,
    toolchain: Optional[List[str]] = None,
    features: Optional[List[str]] = None,
    test_filter: str = "",
    concurrency: int = 1,
    fail_fast: bool = False,
    env: Optional[Dict[str, str]] = None,
    cases: Optional[List[TestCase]] = None,
    quarantine: Optional[str] = None,
) -> JobFamily:
    """
    Declare a job family.

    If `environment` is omitted and the family has exactly one env axis, the
    environment template defaults to that axis ("{<axis name>}").
    """
    if environment is None:
        env_axes = [a for a in axes if a.kind == "env"]
        if len(env_axes) != 1:
            raise ValueError(
                f"family({name!r}) needs environment=... "
                "(cannot infer it without exactly one env axis)"
            )
        environment = "{" + env_axes[0].name + "}"

    return JobFamily(
        name=name,
        environment=environment,
        axes=list(axes),
        toolchain=list(toolchain or []),
        features=list(features or []),
        test_filter=test_filter,
        concurrency=concurrency,
        fail_fast=fail_fast,
        # force values to str so they can go straight into a child env
        env={k: str(v) for k, v in (env or {}).items()},
        cases=list(cases) if cases is not None else None,
        quarantine_reason=quarantine,
    )


# ---------------------------------------------------------------------
# Matrix helper (single-file story)
# ---------------------------------------------------------------------

def matrix(
    name: str,
    *families: JobFamily,
    max_jobs: int = 256,
    paths: Optional[List[str]] = None,
    prepare: Optional[List[str]] = None,
) -> MatrixSpec:
    """
    Matrix definition helper.

        from relaymatrix import matrix, family, axis

        def matrix_spec():
            return matrix(
                "relayer",
                family("integration-test", axis("gaiad", ["gaia6", "gaia7"])),
            )
    """
    return MatrixSpec(
        name=name,
        families=list(families),
        max_jobs=max_jobs,
        paths=list(paths or []),
        prepare=list(prepare or []),
    )
