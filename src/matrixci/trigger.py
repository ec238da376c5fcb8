# trigger.py
from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, model_validator

from .model import Run, RunPredicate, Triggers

TAG_PREFIX = "refs/tags/"
BRANCH_PREFIX = "refs/heads/"


class EventPayload(BaseModel):
    """
    Inbound event descriptor.

    Full git refs are accepted and normalised:
      refs/tags/v1.2.3  -> ref="v1.2.3", is_tag=True
      refs/heads/main   -> ref="main"
    """
    kind: Literal["manual", "pull_request", "push"]
    ref: str
    is_tag: bool = False
    base_ref: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        ref = data.get("ref")
        if isinstance(ref, str):
            if ref.startswith(TAG_PREFIX):
                data["ref"] = ref[len(TAG_PREFIX):]
                data["is_tag"] = True
            elif ref.startswith(BRANCH_PREFIX):
                data["ref"] = ref[len(BRANCH_PREFIX):]
        base = data.get("base_ref")
        if isinstance(base, str) and base.startswith(BRANCH_PREFIX):
            data["base_ref"] = base[len(BRANCH_PREFIX):]
        return data


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(value, p) for p in patterns)


def match_reason(triggers: Triggers, event: EventPayload) -> str | None:
    """Return why `event` starts a run, or None when it does not."""
    if event.kind == "manual":
        return "manual dispatch" if triggers.manual else None

    if event.kind == "pull_request":
        branch = event.base_ref or event.ref
        if _matches_any(branch, triggers.pull_request):
            return f"pull request into '{branch}'"
        return None

    # push
    if event.is_tag:
        if _matches_any(event.ref, triggers.push_tags):
            return f"tag push '{event.ref}'"
        return None
    if _matches_any(event.ref, triggers.push_branches):
        return f"push to '{event.ref}'"
    return None


def evaluate(triggers: Triggers, event: EventPayload) -> Optional[Run]:
    """Create a Run for `event`, or return None if no trigger matches (not an error)."""
    if match_reason(triggers, event) is None:
        return None
    return Run(event=event.kind, ref=event.ref, is_tag=event.is_tag)


# ---------------------------------------------------------------------
# Start predicates over Run
# ---------------------------------------------------------------------

def tag_push(pattern: str = "v*") -> RunPredicate:
    """True for push events of a tag matching `pattern`."""
    def predicate(run: Run) -> bool:
        return run.is_tag_push and fnmatchcase(run.ref, pattern)

    predicate.description = f"tag push matching {pattern!r}"  # type: ignore[attr-defined]
    return predicate


def on_branch(*branches: str) -> RunPredicate:
    """True when the run's ref is one of the given branches (globs allowed)."""
    def predicate(run: Run) -> bool:
        return not run.is_tag and _matches_any(run.ref, branches)

    predicate.description = f"branch in {list(branches)}"  # type: ignore[attr-defined]
    return predicate


def event_is(*kinds: str) -> RunPredicate:
    def predicate(run: Run) -> bool:
        return run.event in kinds

    predicate.description = f"event in {list(kinds)}"  # type: ignore[attr-defined]
    return predicate


def describe(predicate) -> str:
    return getattr(predicate, "description", None) or getattr(predicate, "__name__", repr(predicate))
