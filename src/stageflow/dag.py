# dag.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple, Union

from .errors import ArtifactDependencyError, CycleError, DanglingDependencyError
from .model import PRE_STAGE, JobSpec, PipelineSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageOrderEdge:
    """Implicit edge: source sits in an earlier stage than target."""
    source: str
    target: str


@dataclass(frozen=True)
class ExplicitNeedEdge:
    """Edge declared through target's `needs`."""
    source: str
    target: str
    artifacts: bool = True


Edge = Union[StageOrderEdge, ExplicitNeedEdge]


@dataclass
class JobGraph:
    """
    DAG of included jobs.

    predecessors[x] are the jobs that must finish before x,
    successors[x] the jobs unlocked by x.
    """
    jobs: Dict[str, JobSpec]
    edges: List[Edge] = field(default_factory=list)
    predecessors: Dict[str, Set[str]] = field(default_factory=dict)
    successors: Dict[str, Set[str]] = field(default_factory=dict)
    artifact_sources: Dict[str, List[str]] = field(default_factory=dict)
    levels: List[List[str]] = field(default_factory=list)

    @property
    def order(self) -> List[str]:
        """Flat topological order (deterministic)."""
        return [name for level in self.levels for name in level]

    def ancestors(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        todo = deque(self.predecessors.get(name, ()))
        while todo:
            n = todo.popleft()
            if n not in seen:
                seen.add(n)
                todo.extend(self.predecessors.get(n, ()))
        return seen

    def descendants(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        todo = deque(self.successors.get(name, ()))
        while todo:
            n = todo.popleft()
            if n not in seen:
                seen.add(n)
                todo.extend(self.successors.get(n, ()))
        return seen

    def edges_into(self, name: str) -> List[Edge]:
        return [e for e in self.edges if e.target == name]


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Each level only depends on earlier levels, so its jobs may run in parallel.
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
        raise CycleError(
            f"Job graph has a cycle. Stuck jobs: {remaining}",
            details={"stuck": remaining},
        )

    return levels


def _stage_edges(spec: PipelineSpec, job: JobSpec, included: List[JobSpec]) -> List[Edge]:
    rank = spec.stage_index(job.stage)
    return [
        StageOrderEdge(source=other.name, target=job.name)
        for other in included
        if spec.stage_index(other.stage) < rank
    ]


def _need_edges(job: JobSpec, by_name: Dict[str, JobSpec], included: List[JobSpec]) -> List[Edge]:
    edges: List[Edge] = []
    for need in job.needs or ():
        if need.job not in by_name:
            if need.optional:
                logger.debug("Dropping optional need %s -> %s (not in run)", need.job, job.name)
                continue
            raise DanglingDependencyError(
                f"Job '{job.name}' needs '{need.job}', which is not part of this pipeline run",
                job=job.name,
                details={"included": sorted(by_name)},
            )
        edges.append(ExplicitNeedEdge(source=need.job, target=job.name, artifacts=need.artifacts))

    # .pre jobs precede everything, explicit needs or not
    if job.stage != PRE_STAGE:
        explicit = {e.source for e in edges}
        edges.extend(
            StageOrderEdge(source=other.name, target=job.name)
            for other in included
            if other.stage == PRE_STAGE and other.name not in explicit
        )
    return edges


def build_graph(spec: PipelineSpec, included: Iterable[str]) -> JobGraph:
    """
    Build the execution DAG for the included jobs of one run.

    Raises:
      DanglingDependencyError: a `needs` edge names a job outside the run
      CycleError: the edges form a cycle
      ArtifactDependencyError: an artifact source may not finish before its consumer
    """
    wanted = set(included)
    jobs = [j for j in spec.jobs if j.name in wanted]
    missing = sorted(wanted - {j.name for j in jobs})
    if missing:
        raise DanglingDependencyError(f"Unknown jobs requested: {missing}")

    by_name = {j.name: j for j in jobs}
    graph = JobGraph(jobs=by_name)
    graph.predecessors = {n: set() for n in by_name}
    graph.successors = {n: set() for n in by_name}

    for job in jobs:
        if job.needs is None:
            edges = _stage_edges(spec, job, jobs)
        else:
            edges = _need_edges(job, by_name, jobs)
        for e in edges:
            if e.source in graph.predecessors[job.name]:
                continue
            graph.edges.append(e)
            graph.predecessors[job.name].add(e.source)
            graph.successors[e.source].add(job.name)

    indeg = {n: len(p) for n, p in graph.predecessors.items()}
    graph.levels = topo_levels(graph.successors, indeg)

    for job in jobs:
        graph.artifact_sources[job.name] = _artifact_sources(graph, job)

    logger.info(
        "Job graph built: %d jobs, %d edges, %d levels",
        len(by_name), len(graph.edges), len(graph.levels),
    )
    return graph


def _artifact_sources(graph: JobGraph, job: JobSpec) -> List[str]:
    """
    Jobs whose artifacts and exports `job` receives:
      - explicit `dependencies` when declared
      - else needs with artifacts=True
      - else every stage-order predecessor
    Every source must be an ancestor, otherwise the consumer could start
    before the producer finished.
    """
    if job.dependencies is not None:
        sources = list(job.dependencies)
    else:
        sources = [
            e.source for e in graph.edges_into(job.name)
            if isinstance(e, StageOrderEdge) or e.artifacts
        ]

    ancestors = graph.ancestors(job.name)
    for src in sources:
        if src not in graph.jobs:
            raise DanglingDependencyError(
                f"Job '{job.name}' takes artifacts from '{src}', which is not part of this pipeline run",
                job=job.name,
            )
        if src not in ancestors:
            raise ArtifactDependencyError(
                f"Job '{job.name}' takes artifacts from '{src}' but does not run after it; "
                f"add '{src}' to its needs or move it to a later stage",
                job=job.name,
                details={"source": src},
            )
    order = {name: i for i, name in enumerate(graph.order)}
    return sorted(dict.fromkeys(sources), key=lambda n: order[n])


def plan_levels(graph: JobGraph) -> List[Tuple[int, List[str]]]:
    """Numbered levels for printing a plan."""
    return list(enumerate(graph.levels, start=1))
