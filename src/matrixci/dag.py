# dag.py
from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import ConfigurationError
from .model import Job, JobState


class GateDecision(str, Enum):
    START = "start"
    WAIT = "wait"
    SKIP = "skip"


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must succeed BEFORE this job)

    Returns (adj, indeg) where adj maps dep -> dependents.
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
            if dep == job.name:
                raise ConfigurationError(f"Job '{job.name}' depends on itself", job=job.name)
            if dep not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' depends on missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # edge dep -> job.name
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
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


def plan_stages(jobs: Iterable[Job]) -> List[List[str]]:
    """Validate the graph and return its stages."""
    adj, indeg = build_dag(list(jobs))
    return topo_levels(adj, indeg)


def topo_order(jobs: Iterable[Job]) -> List[str]:
    return [name for level in plan_stages(jobs) for name in level]


# ---------------------------------------------------------------------
# Dependency gate
# ---------------------------------------------------------------------

def may_start(job: Job, states: Mapping[str, JobState]) -> GateDecision:
    """
    Decide whether `job` may be dispatched given a snapshot of job states.

    Any failed or skipped dependency skips the job (terminal, propagates
    further downstream). All dependencies successful starts it. Anything
    else waits for the next state change.
    """
    deps = list(job.needs or [])
    dep_states = [states.get(d, JobState.PENDING) for d in deps]

    if any(s in (JobState.FAILURE, JobState.SKIPPED) for s in dep_states):
        return GateDecision.SKIP
    if all(s == JobState.SUCCESS for s in dep_states):
        return GateDecision.START
    return GateDecision.WAIT


def unmet_reason(job: Job, states: Mapping[str, JobState]) -> str:
    bad = [d for d in job.needs or [] if states.get(d) in (JobState.FAILURE, JobState.SKIPPED)]
    parts = [f"{d} {states[d].value}" for d in bad]
    return "dependency unmet: " + ", ".join(parts)
