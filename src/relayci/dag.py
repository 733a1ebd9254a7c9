# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Set

from .errors import ConfigurationError
from .model import Job


@dataclass(frozen=True)
class JobGraph:
    """
    DAG of jobs. Edges go dependency -> dependent.

    Jobs with no path between them are mutually concurrent candidates.
    """
    jobs: Dict[str, Job]
    dependents: Dict[str, Set[str]]  # job -> jobs that need it

    def needs_of(self, name: str) -> Set[str]:
        return set(self.jobs[name].needs)

    def indegree(self) -> Dict[str, int]:
        return {name: len(self.needs_of(name)) for name in self.jobs}

    def roots(self) -> List[str]:
        return sorted(name for name, deg in self.indegree().items() if deg == 0)

    def stages(self) -> List[List[str]]:
        """
        Jobs grouped by depth: every job sits one stage after its deepest
        need, so each stage can run in parallel. Names are sorted per stage.
        """
        waiting = self.indegree()
        stage = self.roots()
        stages: List[List[str]] = []
        while stage:
            stages.append(stage)
            unlocked: Set[str] = set()
            for name in stage:
                for dep in self.dependents[name]:
                    waiting[dep] -= 1
                    if waiting[dep] == 0:
                        unlocked.add(dep)
            stage = sorted(unlocked)

        placed = sum(len(s) for s in stages)
        if placed != len(self.jobs):
            stuck = sorted(n for n, left in waiting.items() if left > 0)
            raise ConfigurationError(
                message=f"Job graph has a cycle. Stuck jobs: {stuck}",
                details={"stuck": stuck},
            )
        return stages

    def __len__(self) -> int:
        return len(self.jobs)


def build_graph(jobs: List[Job]) -> JobGraph:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must finish BEFORE this job
    Raises ConfigurationError on duplicates, unresolved needs, or cycles.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(
            message=f"Duplicate job names found: {dupes}",
            details={"duplicates": dupes},
        )

    by_name: Dict[str, Job] = {j.name: j for j in jobs}
    dependents: Dict[str, Set[str]] = {n: set() for n in by_name}

    for job in jobs:
        for need in job.needs:
            if need not in by_name:
                raise ConfigurationError(
                    message=f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(by_name)}",
                    job=job.name,
                )
            if need == job.name:
                raise ConfigurationError(message=f"Job '{job.name}' needs itself", job=job.name)
            dependents[need].add(job.name)

    graph = JobGraph(jobs=by_name, dependents=dependents)
    graph.stages()  # raises on cycles
    return graph
