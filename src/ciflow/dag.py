# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .conditions import ExpressionError, check_condition, check_continue_on_error
from .errors import (
    CycleDetected,
    DuplicateJobName,
    InvalidCondition,
    UnknownDependency,
    UnknownGate,
)
from .model import Job


@dataclass(frozen=True)
class DependencyGraph:
    """
    Validated job graph. Read-only once built.

      jobs:  name -> Job, declaration order
      adj:   dependency -> dependents
      needs: job -> the jobs it needs (deduplicated, declaration order)
      order: one valid topological order
    """
    jobs: Mapping[str, Job]
    adj: Mapping[str, frozenset]
    needs: Mapping[str, Tuple[str, ...]]
    order: Tuple[str, ...]

    def dependents(self, name: str) -> frozenset:
        return self.adj[name]

    def terminal_jobs(self) -> List[str]:
        """Jobs nothing else needs, in declaration order."""
        return [name for name in self.jobs if not self.adj[name]]


def _deps_of(job: Job) -> List[str]:
    out: List[str] = []
    for d in job.needs or []:
        if d not in out:
            out.append(d)
    return out


def build_dag(jobs: Sequence[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency and in-degree maps from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobName(dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in _deps_of(job):
            if dep not in name_set:
                raise UnknownDependency(job.name, dep, names)
            # Edge dep -> job.name (dep must finish before job)
            adj[dep].add(job.name)
            indeg[job.name] += 1

    return adj, indeg


def find_cycle(jobs: Sequence[Job]) -> List[str] | None:
    """
    Return one dependency cycle as job names in encounter order, or None.

    Depth-first over `needs`, visiting jobs in declaration order.
    """
    needs = {j.name: _deps_of(j) for j in jobs}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in needs}

    for start in needs:
        if color[start] != WHITE:
            continue
        path: List[str] = [start]
        stack = [iter(needs[start])]
        color[start] = GREY

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(needs[nxt]))

    return None


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Jobs in the same stage have no dependency between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    order = list(indeg)
    q = deque([n for n in order if indeg[n] == 0])

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set()), key=order.index):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = [n for n in order if indeg[n] > 0]
        raise CycleDetected(remaining)

    return levels


def build_graph(jobs: Iterable[Job], gates: Sequence[str] = ()) -> DependencyGraph:
    """
    Validate `jobs` and return the dependency graph.

    Fails closed: any definition error raises and no graph is returned.
    """
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)

    cycle = find_cycle(jobs)
    if cycle:
        raise CycleDetected(cycle)

    for job in jobs:
        try:
            check_condition(job)
        except ExpressionError as e:
            raise InvalidCondition(job.name, str(job.condition), str(e)) from e
        try:
            check_continue_on_error(job)
        except ExpressionError as e:
            raise InvalidCondition(job.name, str(job.continue_on_error), str(e)) from e

    for gate in gates:
        if gate not in adj:
            raise UnknownGate(gate, list(adj))

    levels = topo_levels(adj, indeg)
    return DependencyGraph(
        jobs={j.name: j for j in jobs},
        adj={name: frozenset(children) for name, children in adj.items()},
        needs={j.name: tuple(_deps_of(j)) for j in jobs},
        order=tuple(name for level in levels for name in level),
    )
