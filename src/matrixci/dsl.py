# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import (
    ArtifactDownload,
    ArtifactUpload,
    Job,
    RunPredicate,
    Step,
    StepContext,
    Triggers,
    Workflow,
)
from .trigger import event_is, on_branch, tag_push


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Callable[[StepContext], bool] | None = None,
    secret: str | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, when=when, secret=secret)


def matrix_is(axis: str, *values: str) -> Callable[[StepContext], bool]:
    """Step condition: run only for the given matrix values, e.g. matrix_is("target", "x86_64")."""
    def predicate(ctx: StepContext) -> bool:
        return ctx.matrix.get(axis) in values

    return predicate


# ---------------------------------------------------------------------
# Artifact helpers
# ---------------------------------------------------------------------

def upload(name: str, path: str = "dist") -> ArtifactUpload:
    return ArtifactUpload(name=name, path=path)


def download(pattern: str, path: str = "dist", *, merge: bool = True) -> ArtifactDownload:
    return ArtifactDownload(pattern=pattern, path=path, merge=merge)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(**axes: Iterable[Any]) -> Dict[str, List[str]]:
    """
    Matrix axes for job(..., matrix=...).

    Example:
        job("linux", build_wheels(target="{{ matrix.target }}"),
            matrix=matrix(target=["x86_64", "i686", "aarch64"]))
    """
    out = {key: [str(v) for v in values] for key, values in axes.items()}
    for key, values in out.items():
        if not values:
            raise ValueError(f"matrix axis {key!r} has no values")
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    platform: str | None = None,
    matrix: Optional[Dict[str, List[str]]] = None,
    when: Optional[RunPredicate] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    upload: Optional[ArtifactUpload] = None,
    download: Optional[Sequence[ArtifactDownload]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        platform=platform,
        matrix=dict(matrix or {}),
        when=when,
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
        upload=upload,
        download=list(download or []),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._platform: str | None = None
        self._matrix: dict[str, list[str]] = {}
        self._when: Optional[RunPredicate] = None
        self._upload: Optional[ArtifactUpload] = None
        self._download: list[ArtifactDownload] = []

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(Step(name=name, run=run, cwd=cwd, **kwargs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def on_platform(self, platform: str):
        self._platform = platform
        return self

    def with_matrix(self, **axes: Iterable[Any]):
        self._matrix.update(matrix(**axes))
        return self

    def only_if(self, predicate: RunPredicate):
        self._when = predicate
        return self

    def uploads(self, name: str, path: str = "dist"):
        self._upload = ArtifactUpload(name=name, path=path)
        return self

    def downloads(self, pattern: str, path: str = "dist", *, merge: bool = True):
        self._download.append(ArtifactDownload(pattern=pattern, path=path, merge=merge))
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            platform=self._platform,
            matrix=dict(self._matrix),
            when=self._when,
            env=dict(self._env),
            requires=list(self._requires),
            upload=self._upload,
            download=list(self._download),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('sdist').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def on(
    *,
    manual: bool = True,
    pull_request: Sequence[str] = ("main",),
    push_branches: Sequence[str] = ("main",),
    push_tags: Sequence[str] = ("v*",),
) -> Triggers:
    """Trigger configuration: which events start a run."""
    return Triggers(
        manual=manual,
        pull_request=tuple(pull_request),
        push_branches=tuple(push_branches),
        push_tags=tuple(push_tags),
    )


def wf(
    *jobs: Job,
    name: str = "workflow",
    triggers: Triggers | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from matrixci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                name="release",
                triggers=on(push_tags=["v*"]),
            )
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        triggers=triggers or Triggers(),
        env={k: str(v) for k, v in (env or {}).items()},
    )


__all__ = [
    "sh",
    "matrix_is",
    "upload",
    "download",
    "matrix",
    "job",
    "JobBuilder",
    "build",
    "on",
    "wf",
    "tag_push",
    "on_branch",
    "event_is",
]
