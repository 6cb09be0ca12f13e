# dag.py
from __future__ import annotations

from collections import deque
from string import Formatter
from typing import Dict, List, Set, Tuple

from .errors import GraphError
from .model import RELEASE_TITLE_FIELDS, Job, Workflow


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must reach a terminal state BEFORE this job

    Returns (adj, indeg) where adj maps a job to its direct dependents.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise GraphError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise GraphError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if need == job.name:
                raise GraphError(f"Job '{job.name}' needs itself")
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (batches).
    Jobs inside one batch are independent and may run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

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
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise GraphError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def downstream(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """Every job that transitively needs `name`."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(adj.get(n, ()))
    return seen


def _validate_steps(job: Job) -> None:
    if not job.steps:
        raise GraphError(f"Job '{job.name}' has no steps")
    seen: Set[str] = set()
    resources = {r.name for r in job.optional}
    if len(resources) != len(job.optional):
        raise GraphError(f"Job '{job.name}' declares an optional resource twice")
    for step in job.steps:
        for ref in step.condition.step_refs if step.condition else ():
            if ref not in seen:
                raise GraphError(
                    f"Job '{job.name}' step '{step.name}' refers to step '{ref}' "
                    "which is not declared before it"
                )
        if step.id is not None:
            if step.id in seen:
                raise GraphError(f"Job '{job.name}' has duplicate step id '{step.id}'")
            seen.add(step.id)
        else:
            seen.add(step.name)
    if job.cache is not None and not job.cache.paths:
        raise GraphError(f"Job '{job.name}' declares a cache with no paths")


def _validate_title(title: str) -> None:
    try:
        fields = [f for _lit, f, _spec, _conv in Formatter().parse(title) if f is not None]
    except ValueError as e:
        raise GraphError(f"Release title {title!r} is malformed: {e}") from e
    unknown = sorted(set(fields) - set(RELEASE_TITLE_FIELDS))
    if unknown:
        raise GraphError(
            f"Release title {title!r} uses unknown placeholders {unknown}; "
            f"allowed: {list(RELEASE_TITLE_FIELDS)}"
        )


def validate_workflow(workflow: Workflow) -> List[List[str]]:
    """
    Validate everything that can be checked before execution and return the
    topological batches. Raises GraphError on the first problem.
    """
    adj, indeg = build_dag(workflow.jobs)
    levels = topo_levels(adj, indeg)

    for job in workflow.jobs:
        _validate_steps(job)

    rel = workflow.release
    if rel is not None:
        known = {j.name for j in workflow.jobs}
        missing = sorted(set(rel.requires) - known)
        if missing:
            raise GraphError(f"Release requires undeclared jobs: {missing}")
        names = [a.name for a in rel.assets]
        if len(set(names)) != len(names):
            raise GraphError("Release asset names must be unique")
        for a in rel.assets:
            if not a.source or not a.name:
                raise GraphError("Release assets need both a source artifact and a name")
        _validate_title(rel.title)

    return levels
