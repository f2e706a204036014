"""Dependency graph built from ``needs`` relationships."""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import CycleError, DuplicateJobError, SelfDependency, UnknownJobReference


class DependencyGraph:
    """Validated DAG of job identifiers.

    Edges point from producer to consumer: if ``build`` needs ``lint`` the
    graph holds ``lint -> build``. Construction fails fast on duplicate ids,
    unknown references, self-dependencies and cycles.
    """

    def __init__(self, needs: Sequence[Tuple[str, Sequence[str]]]) -> None:
        self._order: List[str] = []
        self._index: Dict[str, int] = {}
        for job_id, _ in needs:
            if job_id in self._index:
                raise DuplicateJobError(job_id)
            self._index[job_id] = len(self._order)
            self._order.append(job_id)

        self._predecessors: Dict[str, Tuple[str, ...]] = {}
        self._successors: Dict[str, List[str]] = {job_id: [] for job_id in self._order}
        for job_id, required in needs:
            unique: List[str] = []
            for dep in required:
                if dep == job_id:
                    raise SelfDependency(job_id)
                if dep not in self._index:
                    raise UnknownJobReference(job_id, dep, self._order)
                if dep not in unique:
                    unique.append(dep)
            self._predecessors[job_id] = tuple(unique)
            for dep in unique:
                self._successors[dep].append(job_id)

        cycle = self._find_cycle()
        if cycle:
            raise CycleError(cycle)

    @classmethod
    def from_jobs(cls, jobs: Iterable) -> "DependencyGraph":
        """Build from objects exposing ``id`` and ``needs``."""
        return cls([(job.id, tuple(job.needs)) for job in jobs])

    # ------------------------------------------------------------------
    @property
    def jobs(self) -> List[str]:
        """Job ids in declaration order."""
        return list(self._order)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._index

    def __len__(self) -> int:
        return len(self._order)

    def predecessors(self, job_id: str) -> Tuple[str, ...]:
        return self._predecessors[job_id]

    def successors(self, job_id: str) -> Tuple[str, ...]:
        return tuple(sorted(self._successors[job_id], key=self._index.__getitem__))

    def roots(self) -> List[str]:
        """Jobs with no ``needs``, in declaration order."""
        return [job_id for job_id in self._order if not self._predecessors[job_id]]

    def ancestors(self, job_id: str) -> Set[str]:
        """Every job ``job_id`` transitively needs."""
        seen: Set[str] = set()
        stack = list(self._predecessors[job_id])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self._predecessors[current])
        return seen

    # ------------------------------------------------------------------
    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties are broken by declaration order."""
        indegree = {job_id: len(self._predecessors[job_id]) for job_id in self._order}
        heap = [self._index[job_id] for job_id, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)
        ordered: List[str] = []
        while heap:
            job_id = self._order[heapq.heappop(heap)]
            ordered.append(job_id)
            for child in self._successors[job_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(heap, self._index[child])
        return ordered

    def levels(self) -> List[List[str]]:
        """Group jobs into stages whose members may run in parallel."""
        depth: Dict[str, int] = {}
        for job_id in self.topological_order():
            preds = self._predecessors[job_id]
            depth[job_id] = 1 + max((depth[p] for p in preds), default=-1)
        stages: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for job_id in self._order:
            stages[depth[job_id]].append(job_id)
        return stages

    # ------------------------------------------------------------------
    def _find_cycle(self) -> Optional[List[str]]:
        """Return the job ids on one cycle, in dependency order, or ``None``."""
        done: Set[str] = set()
        for start in self._order:
            if start in done:
                continue
            path: List[str] = [start]
            on_path: Set[str] = {start}
            pending: List[Iterator[str]] = [iter(self._predecessors[start])]
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                elif dep in on_path:
                    # path follows "needs" edges; report producers first
                    return list(reversed(path[path.index(dep) :]))
                elif dep not in done:
                    path.append(dep)
                    on_path.add(dep)
                    pending.append(iter(self._predecessors[dep]))
        return None
