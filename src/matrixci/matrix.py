# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping

from .dag import ConfigurationError
from .model import Job, JobInstance
from .step_workflows import compile_steps

# {{ matrix.target }}, {{ workspace }}
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
_UNSAFE_ID_CHARS = re.compile(r"[^\w.+-]")

# Placeholders left in place by expansion and filled in by the runner.
RUNTIME_KEYS = ("workspace",)


def substitute(
    text: str,
    values: Mapping[str, str],
    *,
    where: str,
    keep: Iterable[str] = RUNTIME_KEYS,
) -> str:
    keep = tuple(keep)

    def repl(m: re.Match) -> str:
        key = m.group(1)
        if key in values:
            return values[key]
        if key in keep:
            return m.group(0)
        raise ConfigurationError(f"{where}: unknown placeholder '{{{{ {key} }}}}'")

    return _PLACEHOLDER.sub(repl, text)


def _substitute_data(data: Any, values: Mapping[str, str], where: str) -> Any:
    if isinstance(data, str):
        return substitute(data, values, where=where)
    if isinstance(data, dict):
        return {k: _substitute_data(v, values, where) for k, v in data.items()}
    if isinstance(data, list):
        return [_substitute_data(v, values, where) for v in data]
    return data


def combinations(axes: Mapping[str, List[Any]]) -> List[Dict[str, str]]:
    """Cartesian product of the axes, in declared order. No axes -> one empty combination."""
    if not axes:
        return [{}]
    keys = list(axes)
    return [
        dict(zip(keys, (str(v) for v in combo)))
        for combo in itertools.product(*(axes[k] for k in keys))
    ]


def instance_id(job: Job, values: Mapping[str, str]) -> str:
    if not values:
        return job.name
    return "-".join([job.name, *(_UNSAFE_ID_CHARS.sub("_", v) for v in values.values())])


def expand(job: Job) -> List[JobInstance]:
    """One JobInstance per matrix combination, with axis values substituted."""
    for axis, axis_values in (job.matrix or {}).items():
        if not axis_values:
            raise ConfigurationError(f"Job '{job.name}' matrix axis '{axis}' is empty")

    instances: List[JobInstance] = []
    for values in combinations(job.matrix or {}):
        iid = instance_id(job, values)
        ctx = {f"matrix.{k}": v for k, v in values.items()}

        def sub(text: str, what: str) -> str:
            return substitute(text, ctx, where=f"job '{iid}' {what}")

        steps = [
            replace(
                step,
                name=sub(step.name, f"step '{step.name}'"),
                run=sub(step.run, f"step '{step.name}'"),
                cwd=sub(step.cwd, f"step '{step.name}' cwd") if step.cwd else step.cwd,
                data=_substitute_data(step.data, ctx, f"job '{iid}' step '{step.name}' data"),
            )
            for step in job.steps
        ]
        steps = compile_steps(steps, platform=job.platform)

        upload = job.upload
        if upload is not None:
            upload = replace(upload, name=sub(upload.name, "upload"), path=sub(upload.path, "upload"))

        instances.append(
            JobInstance(
                id=iid,
                job=job,
                matrix=dict(values),
                steps=steps,
                env={k: sub(str(v), f"env '{k}'") for k, v in (job.env or {}).items()},
                upload=upload,
                download=[
                    replace(d, pattern=sub(d.pattern, "download"), path=sub(d.path, "download"))
                    for d in job.download
                ],
            )
        )
    return instances


def expand_all(jobs: List[Job]) -> Dict[str, JobInstance]:
    """
    Expand every job and wire instance-level dependencies:
    an instance needs every instance of every job its template needs.
    """
    instances: Dict[str, JobInstance] = {}
    by_job: Dict[str, List[str]] = {}

    for job in jobs:
        for inst in expand(job):
            if inst.id in instances:
                raise ConfigurationError(f"Duplicate job instance id: {inst.id}")
            instances[inst.id] = inst
            by_job.setdefault(job.name, []).append(inst.id)

    for inst in instances.values():
        inst.needs = [iid for dep in inst.job.needs for iid in by_job.get(dep, [])]

    return instances
