# expand.py
from __future__ import annotations

import itertools
import string
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import InvalidSpec
from .model import EnvironmentRef, Job, JobFamily, MatrixAxis, MatrixSpec

AXIS_KINDS = ("env", "feature")


def _template_fields(template: str) -> Set[str]:
    try:
        return {f for _, f, _, _ in string.Formatter().parse(template) if f}
    except ValueError as e:
        raise InvalidSpec(f"bad environment template {template!r}", [str(e)]) from e


def _validate_axis(fam: JobFamily, ax: MatrixAxis) -> None:
    if not ax.name:
        raise InvalidSpec(f"family '{fam.name}' has an axis without a name")
    if ax.kind not in AXIS_KINDS:
        raise InvalidSpec(
            f"axis '{fam.name}.{ax.name}' has unknown kind {ax.kind!r}",
            [f"expected one of {list(AXIS_KINDS)}"],
        )
    if not ax.variants:
        raise InvalidSpec(f"axis '{fam.name}.{ax.name}' is empty")
    if len(set(ax.variants)) != len(ax.variants):
        dupes = sorted({v for v in ax.variants if ax.variants.count(v) > 1})
        raise InvalidSpec(f"axis '{fam.name}.{ax.name}' has duplicate variants: {dupes}")


def _validate_family(fam: JobFamily) -> None:
    if not fam.name:
        raise InvalidSpec("job family without a name")
    if not fam.environment:
        raise InvalidSpec(f"family '{fam.name}' has no environment")
    if not isinstance(fam.concurrency, int) or fam.concurrency < 1:
        raise InvalidSpec(f"family '{fam.name}' concurrency must be a positive integer, got {fam.concurrency!r}")

    names = [a.name for a in fam.axes]
    if len(set(names)) != len(names):
        raise InvalidSpec(f"family '{fam.name}' declares an axis twice", [str(names)])
    for ax in fam.axes:
        _validate_axis(fam, ax)

    unknown = _template_fields(fam.environment) - set(names)
    if unknown:
        raise InvalidSpec(
            f"family '{fam.name}' environment {fam.environment!r} references unknown axes {sorted(unknown)}",
            [f"known axes: {names}"],
        )


def job_count(spec: MatrixSpec) -> int:
    """Number of jobs `expand` would produce, computed without enumerating."""
    total = 0
    for fam in spec.families:
        n = 1
        for ax in fam.axes:
            n *= len(ax.variants)
        total += n
    return total


def job_id(family: str, values: Sequence[Tuple[str, str]], features: Iterable[str]) -> str:
    """
    Deterministic job id:
        integration-test[gaiad=gaia6]
        ordered-channel-test+ordered
    """
    out = family
    if values:
        out += "[" + ",".join(f"{k}={v}" for k, v in values) + "]"
    feats = sorted(features)
    if feats:
        out += "+" + "+".join(feats)
    return out


def select_families(spec: MatrixSpec, names: Optional[Iterable[str]]) -> MatrixSpec:
    """Restrict a spec to the named families (CLI selector). Unknown names are an error."""
    wanted = list(names or [])
    if not wanted:
        return spec
    known = [f.name for f in spec.families]
    missing = [n for n in wanted if n not in known]
    if missing:
        raise InvalidSpec(f"unknown job families: {missing}", [f"available: {known}"])
    return MatrixSpec(
        name=spec.name,
        families=[f for f in spec.families if f.name in wanted],
        max_jobs=spec.max_jobs,
        paths=list(spec.paths),
        prepare=list(spec.prepare),
    )


def expand(
    spec: MatrixSpec,
    *,
    test_filter: Optional[str] = None,
    concurrency: Optional[int] = None,
    fail_fast: Optional[bool] = None,
) -> List[Job]:
    """
    Expand a matrix spec into the ordered list of independent jobs.

    Ordering: families in declaration order, then the product of their axes
    (axes in declaration order, variants in lexical order). The overrides,
    when given, replace the per-family value on every job.
    """
    if not spec.families:
        raise InvalidSpec(f"matrix '{spec.name}' declares no job families")
    if concurrency is not None and concurrency < 1:
        raise InvalidSpec(f"concurrency override must be positive, got {concurrency}")

    fam_names = [f.name for f in spec.families]
    if len(set(fam_names)) != len(fam_names):
        dupes = sorted({n for n in fam_names if fam_names.count(n) > 1})
        raise InvalidSpec(f"duplicate job family names: {dupes}")

    for fam in spec.families:
        _validate_family(fam)

    total = job_count(spec)
    if total > spec.max_jobs:
        raise InvalidSpec(
            f"matrix '{spec.name}' expands to {total} jobs, above the bound of {spec.max_jobs}",
            [f"{f.name}: {' x '.join(str(len(a.variants)) for a in f.axes) or '1'}" for f in spec.families],
        )

    jobs: List[Job] = []
    seen: Dict[str, str] = {}

    for fam in spec.families:
        axes = fam.axes
        ordered = [sorted(a.variants) for a in axes]

        for combo in itertools.product(*ordered):
            values = list(zip((a.name for a in axes), combo))
            mapping = dict(values)

            feats = set(fam.features)
            for a, v in zip(axes, combo):
                if a.kind == "feature":
                    feats.add(v)

            jid = job_id(fam.name, values, feats)
            if jid in seen:
                raise InvalidSpec(f"job id collision: {jid!r}", [f"first from family '{seen[jid]}'"])
            seen[jid] = fam.name

            env_ref = EnvironmentRef(
                package=fam.environment.format(**mapping),
                toolchain=tuple(fam.toolchain),
            )
            jobs.append(
                Job(
                    id=jid,
                    family=fam.name,
                    environment=env_ref,
                    features=frozenset(feats),
                    test_filter=fam.test_filter if test_filter is None else test_filter,
                    concurrency=fam.concurrency if concurrency is None else concurrency,
                    index=len(jobs),
                    fail_fast=fam.fail_fast if fail_fast is None else fail_fast,
                    env=tuple(sorted(fam.env.items())),
                    cases=tuple(fam.cases) if fam.cases is not None else None,
                    quarantined=fam.quarantine_reason is not None,
                    quarantine_reason=fam.quarantine_reason,
                )
            )

    return jobs
