# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


EVENT_KINDS = ("manual", "pull_request", "push")


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Run:
    """
    One pipeline execution, created by the trigger evaluator.

    `ref` is a bare branch or tag name (no refs/heads/ or refs/tags/ prefix).
    """
    event: str
    ref: str
    is_tag: bool = False
    run_id: str = field(default_factory=_new_run_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_tag_push(self) -> bool:
        return self.event == "push" and self.is_tag


RunPredicate = Callable[[Run], bool]


@dataclass(frozen=True)
class StepContext:
    """What a step-level `when` predicate gets to look at."""
    run: Run
    job: str
    matrix: Dict[str, str]


@dataclass(frozen=True)
class Step:
    """
    A single command (step) inside a CI job.

    kind=None is a plain shell step. Typed kinds ("maturin", "sdist", "smoke")
    are compiled into shell steps during matrix expansion; "publish" is handled
    by the runner itself.
    """
    name: str
    run: str
    cwd: str | None = None
    kind: str | None = None
    data: Dict[str, Any] | None = None
    when: Callable[[StepContext], bool] | None = None
    secret: str | None = None


@dataclass(frozen=True)
class ArtifactUpload:
    """Archive `path` (relative to the job workspace) into slot `name` after success."""
    name: str
    path: str = "dist"


@dataclass(frozen=True)
class ArtifactDownload:
    """Extract every committed slot matching `pattern` into `path` before the first step."""
    pattern: str
    path: str = "dist"
    merge: bool = True


@dataclass
class Job:
    """
    A job template: steps + dependencies + matrix axes + start condition.

    Never mutated by the engine; `matrixci.matrix.expand` turns it into one
    JobInstance per matrix combination.
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    platform: str | None = None
    matrix: Dict[str, List[str]] = field(default_factory=dict)
    when: Optional[RunPredicate] = None

    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)

    upload: Optional[ArtifactUpload] = None
    download: list[ArtifactDownload] = field(default_factory=list)


@dataclass(frozen=True)
class Triggers:
    """Which events start a run. Defaults follow a typical wheel release workflow."""
    manual: bool = True
    pull_request: tuple[str, ...] = ("main",)
    push_branches: tuple[str, ...] = ("main",)
    push_tags: tuple[str, ...] = ("v*",)


@dataclass
class Workflow:
    name: str
    jobs: list[Job]
    triggers: Triggers = field(default_factory=Triggers)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Credentials:
    """Username/token pair for the publish step. The token never shows up in repr/str."""
    username: str
    token: str = field(repr=False)

    def __str__(self) -> str:
        return f"Credentials(username={self.username!r}, token=***)"

    def env(self) -> Dict[str, str]:
        return {"TWINE_USERNAME": self.username, "TWINE_PASSWORD": self.token}


class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


@dataclass
class StepResult:
    name: str
    status: str  # "ok" | "failed" | "skipped"
    exit_code: int | None = None


@dataclass
class JobInstance:
    """One concrete execution of a Job (one per matrix combination)."""
    id: str
    job: Job
    matrix: Dict[str, str]
    steps: list[Step]
    env: Dict[str, str] = field(default_factory=dict)
    upload: Optional[ArtifactUpload] = None
    download: list[ArtifactDownload] = field(default_factory=list)

    # upstream instance ids (every instance of every job in job.needs)
    needs: list[str] = field(default_factory=list)

    state: JobState = JobState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    reason: str | None = None
    failed_step: str | None = None
    exit_code: int | None = None
    output: str = ""
    step_results: list[StepResult] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class RunResult:
    run: Run
    status: str  # "success" | "failure" | "cancelled"
    instances: Dict[str, JobInstance]

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def states(self) -> Dict[str, str]:
        return {iid: inst.state.value for iid, inst in self.instances.items()}

    def failures(self) -> list[JobInstance]:
        return [i for i in self.instances.values() if i.state is JobState.FAILED]
