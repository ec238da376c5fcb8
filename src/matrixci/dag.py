# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .model import Job


class ConfigurationError(ValueError):
    """Invalid workflow definition. Raised before any job of a run starts."""


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must succeed BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if dep == job.name:
                raise ConfigurationError(f"Job '{job.name}' needs itself")
            # edge dep -> job.name
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs in one level never depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def validate(jobs: List[Job]) -> List[List[str]]:
    """Check names, edges and acyclicity; return the job levels."""
    for job in jobs:
        if not job.steps:
            raise ConfigurationError(f"Job '{job.name}' has no steps")
        for axis, values in (job.matrix or {}).items():
            if not values:
                raise ConfigurationError(f"Job '{job.name}' matrix axis '{axis}' is empty")
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)
