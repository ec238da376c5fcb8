# gate.py
from __future__ import annotations

from typing import Collection, Mapping, Optional

from .model import JobInstance, JobState, Run
from .trigger import describe


class DependencyUnmet(Exception):
    """The instance can never start in this run; the scheduler marks it skipped."""

    def __init__(self, job: str, reason: str):
        super().__init__(f"[{job}] {reason}")
        self.job = job
        self.reason = reason


def check(
    instance: JobInstance,
    states: Mapping[str, JobState],
    run: Run,
    *,
    platforms: Optional[Collection[str]] = None,
) -> bool:
    """
    Decide whether `instance` may start.

    Returns True when every upstream instance succeeded and the start condition
    holds, False while some upstream is still non-terminal (blocked).
    Raises DependencyUnmet when the instance must be skipped: an upstream
    failed or was skipped, its platform is not available, or its start
    condition is false.
    """
    for up in instance.needs:
        state = states[up]
        if state in (JobState.FAILED, JobState.SKIPPED):
            raise DependencyUnmet(instance.id, f"upstream '{up}' {state.value}")

    if any(not states[up].terminal for up in instance.needs):
        return False

    platform = instance.job.platform
    if platforms is not None and platform is not None and platform not in platforms:
        raise DependencyUnmet(instance.id, f"platform '{platform}' unavailable on this host")

    predicate = instance.job.when
    if predicate is not None and not predicate(run):
        raise DependencyUnmet(instance.id, f"condition not met: {describe(predicate)}")

    return True
