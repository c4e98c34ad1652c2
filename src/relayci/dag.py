# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Sequence, Set

from .errors import ConfigError, CycleError
from .model import JobSpec


_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


def validate(jobs: Sequence[JobSpec]) -> None:
    """
    Reject definitions that cannot form a DAG, before any traversal:
      - duplicate job names
      - a job that needs itself
      - a job that needs a job which does not exist
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    for job in jobs:
        for need in job.needs:
            if need == job.name:
                raise ConfigError(f"Job '{job.name}' requires itself")
            if need not in name_set:
                raise ConfigError(
                    f"Job '{job.name}' requires missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )


def resolve(jobs: Sequence[JobSpec]) -> List[str]:
    """
    Return the job names in a topologically valid order.

    Depth-first traversal, visiting roots and dependencies in declaration
    order so the result is deterministic. Meeting an in-progress node means
    the path on the stack from that node onwards is a cycle.
    """
    validate(jobs)
    needs: Dict[str, Sequence[str]] = {j.name: j.needs for j in jobs}
    marks: Dict[str, int] = {j.name: _UNVISITED for j in jobs}
    order: List[str] = []
    stack: List[str] = []

    def visit(name: str) -> None:
        if marks[name] == _DONE:
            return
        if marks[name] == _IN_PROGRESS:
            raise CycleError(stack[stack.index(name):])

        marks[name] = _IN_PROGRESS
        stack.append(name)
        for dep in needs[name]:
            visit(dep)
        stack.pop()
        marks[name] = _DONE
        order.append(name)

    for job in jobs:
        visit(job.name)

    return order


def dependents(jobs: Iterable[JobSpec]) -> Dict[str, List[str]]:
    """Reverse adjacency: job -> jobs that need it, in declaration order."""
    jobs = list(jobs)
    adj: Dict[str, List[str]] = {j.name: [] for j in jobs}
    for job in jobs:
        for need in job.needs:
            if need in adj and job.name not in adj[need]:
                adj[need].append(job.name)
    return adj


def transitive_dependents(adj: Dict[str, List[str]], name: str) -> List[str]:
    """Every job reachable from `name` along dependent edges (BFS order)."""
    seen: Set[str] = set()
    out: List[str] = []
    q = deque(adj.get(name, []))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        out.append(node)
        q.extend(adj.get(node, []))
    return out


def levels(jobs: Sequence[JobSpec]) -> List[List[str]]:
    """
    Group the DAG into stages: every job in a stage only needs jobs from
    earlier stages, so a stage can run in parallel.
    """
    resolve(jobs)  # validates and rejects cycles
    adj = dependents(jobs)
    indeg = {j.name: len(set(j.needs)) for j in jobs}
    position = {j.name: i for i, j in enumerate(jobs)}
    q = deque(n for n in position if indeg[n] == 0)

    out: List[List[str]] = []
    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        out.append(sorted(level, key=position.__getitem__))
    return out
