# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set

from .errors import CyclicDependencyError, UnknownDependencyError
from .model import JobSpec


class WorkflowGraph:
    """
    Job dependency graph of one workflow definition version.

    Edges run dependency -> dependent (the dependency must finish first).
    Ties between independent jobs are broken by declaration order, so the
    topological order and the levels are deterministic.
    """

    def __init__(self, jobs: Mapping[str, JobSpec]):
        self.jobs: Dict[str, JobSpec] = dict(jobs)
        self._index = {name: i for i, name in enumerate(self.jobs)}
        self.dependents: Dict[str, Set[str]] = {n: set() for n in self.jobs}
        self.indegree: Dict[str, int] = {n: 0 for n in self.jobs}

        for job in self.jobs.values():
            for dep in job.needs:
                if dep not in self.jobs:
                    raise UnknownDependencyError(job.name, dep)
                # Edge dep -> job.name (dep must run before job)
                if job.name not in self.dependents[dep]:
                    self.dependents[dep].add(job.name)
                    self.indegree[job.name] += 1

        self.levels: List[List[str]] = self._topo_levels()
        self.order: List[str] = [name for level in self.levels for name in level]

    def _sorted(self, names: Iterable[str]) -> List[str]:
        return sorted(names, key=self._index.__getitem__)

    def _topo_levels(self) -> List[List[str]]:
        """
        Kahn's algorithm grouped into "levels" (stages). Jobs in the same level
        are mutually independent. Any job left unvisited indicates a cycle.
        """
        indeg = dict(self.indegree)  # copy (we mutate it)
        q = deque(self._sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        processed = 0

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                processed += 1

                for child in self._sorted(self.dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(level)

        if processed != len(indeg):
            remaining = self._sorted(n for n, d in indeg.items() if d > 0)
            raise CyclicDependencyError(remaining)

        return levels

    def needs(self, name: str) -> tuple:
        return self.jobs[name].needs

    def roots(self) -> List[str]:
        return list(self.levels[0]) if self.levels else []

    def transitive_dependents(self, name: str) -> List[str]:
        """Every job depending on `name` directly or indirectly, in topological order."""
        seen: Set[str] = set()
        q = deque([name])
        while q:
            for child in self.dependents[q.popleft()]:
                if child not in seen:
                    seen.add(child)
                    q.append(child)
        return [n for n in self.order if n in seen]

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, name: object) -> bool:
        return name in self.jobs


def build_dag(jobs: Mapping[str, JobSpec]) -> WorkflowGraph:
    """Validate dependencies and return the graph (raises on unknown deps or cycles)."""
    return WorkflowGraph(jobs)
