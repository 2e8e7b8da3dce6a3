"""
Dependency Resolver - Decides which ports may start now.

Reads the global dependency edges and the plan-scoped port statuses.
Every call is a snapshot read; callers re-ask after any status change.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.exceptions import DependencyCycleError, NotFoundError
from portcoord.core.models import Pipeline, PipelinePort, PortDependency, PortStatus
from portcoord.core.schemas import (
    ExecutionGroup,
    ExecutionPlan,
    GraphStats,
    PortExecution,
    RunEligibility,
)

logger = structlog.get_logger(__name__)


# ==========================================================================
# In-memory graph
# ==========================================================================

@dataclass
class PortNode:
    port_id: str
    order: int = 0
    status: PortStatus = PortStatus.PENDING
    depends_on: list[str] = field(default_factory=list)


class DependencyGraph:
    """
    Dependency DAG over the ports of one pipeline.

    Edges may point at ports outside the pipeline; those never count as
    complete, but are ignored when computing topological levels.
    """

    def __init__(self, nodes: Iterable[PortNode]):
        self.nodes: dict[str, PortNode] = {n.port_id: n for n in nodes}

    def dependencies(self, port_id: str) -> list[str]:
        node = self.nodes.get(port_id)
        return list(node.depends_on) if node else []

    def dependents(self, port_id: str) -> list[str]:
        return sorted(pid for pid, node in self.nodes.items() if port_id in node.depends_on)

    def _sort_key(self, port_id: str) -> tuple[int, str]:
        return (self.nodes[port_id].order, port_id)

    def topological_levels(self) -> list[list[str]]:
        """
        Group ports into levels with Kahn's algorithm. Ports in one level do
        not depend on each other.

        Raises:
            DependencyCycleError: If the in-plan edges contain a cycle
        """
        in_degree = {
            pid: sum(1 for dep in node.depends_on if dep in self.nodes)
            for pid, node in self.nodes.items()
        }
        remaining = set(self.nodes)
        levels: list[list[str]] = []

        while remaining:
            level = sorted((pid for pid in remaining if in_degree[pid] == 0), key=self._sort_key)
            if not level:
                cycle = self._find_cycle(remaining)
                raise DependencyCycleError(cycle[0], cycle[1], cycle)

            levels.append(level)
            for pid in level:
                remaining.discard(pid)
            for pid in remaining:
                in_degree[pid] -= sum(1 for dep in self.nodes[pid].depends_on if dep in level)

        return levels

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Walk depends-on edges inside ``remaining`` until a port repeats."""
        path = [min(remaining)]
        while True:
            nxt = min(dep for dep in self.nodes[path[-1]].depends_on if dep in remaining)
            if nxt in path:
                return path[path.index(nxt):] + [nxt]
            path.append(nxt)

    def has_cycle(self) -> bool:
        try:
            self.topological_levels()
        except DependencyCycleError:
            return True
        return False

    def ready(self) -> list[str]:
        """Pending ports whose dependencies are all complete in this pipeline."""
        ready = []
        for pid, node in self.nodes.items():
            if node.status != PortStatus.PENDING:
                continue
            if all(
                dep in self.nodes and self.nodes[dep].status == PortStatus.COMPLETE
                for dep in node.depends_on
            ):
                ready.append(pid)
        return sorted(ready, key=self._sort_key)

    def critical_path(self) -> list[str]:
        """Longest dependency chain through the pipeline."""
        try:
            levels = self.topological_levels()
        except DependencyCycleError:
            return []

        longest: dict[str, list[str]] = {}
        for level in levels:
            for pid in level:
                best: list[str] = []
                for dep in self.nodes[pid].depends_on:
                    path = longest.get(dep)
                    if path and len(path) > len(best):
                        best = path
                longest[pid] = best + [pid]

        return max(longest.values(), key=len, default=[])

    def stats(self) -> GraphStats:
        levels = self.topological_levels()
        counts: dict[PortStatus, int] = defaultdict(int)
        for node in self.nodes.values():
            counts[node.status] += 1

        return GraphStats(
            total_ports=len(self.nodes),
            pending_ports=counts[PortStatus.PENDING],
            running_ports=counts[PortStatus.RUNNING],
            complete_ports=counts[PortStatus.COMPLETE],
            failed_ports=counts[PortStatus.FAILED],
            levels=len(levels),
            max_parallelism=max((len(level) for level in levels), default=0),
            critical_path=self.critical_path(),
        )


def find_dependency_path(
    edges: dict[str, set[str]], start: str, goal: str
) -> Optional[list[str]]:
    """
    Follow depends-on edges from ``start``; return the path to ``goal`` if
    one exists.
    """
    stack: list[tuple[str, list[str]]] = [(start, [start])]
    seen: set[str] = set()

    while stack:
        current, path = stack.pop()
        if current == goal:
            return path
        if current in seen:
            continue
        seen.add(current)
        for nxt in sorted(edges.get(current, ())):
            if nxt not in seen:
                stack.append((nxt, path + [nxt]))

    return None


# ==========================================================================
# Resolver
# ==========================================================================

class DependencyResolver:
    """
    Answers "is this port runnable?" against the shared store.

    - A port with no dependency edges is always runnable
    - Every dependency must be ``complete`` in *this* pipeline
    - A dependency the pipeline does not contain is permanently blocking,
      so a mis-specified plan shows up instead of silently stalling
    - Group order (waves) is informational; ports are evaluated one by one
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def can_run(self, pipeline_id: str, port_id: str) -> RunEligibility:
        """
        Check whether a port's dependencies are all complete.

        Returns:
            RunEligibility with the sorted list of blocking dependency ids

        Raises:
            NotFoundError: Unknown pipeline, or port not in the pipeline
        """
        await self._require_membership(pipeline_id, port_id)

        deps = await self._dependencies_of([port_id])
        depends_on = sorted(deps.get(port_id, ()))
        if not depends_on:
            return RunEligibility(pipeline_id=pipeline_id, port_id=port_id, eligible=True)

        statuses = await self._statuses(pipeline_id, depends_on)
        blocking = [dep for dep in depends_on if statuses.get(dep) != PortStatus.COMPLETE]

        return RunEligibility(
            pipeline_id=pipeline_id,
            port_id=port_id,
            eligible=not blocking,
            blocking=blocking,
        )

    async def graph(self, pipeline_id: str) -> DependencyGraph:
        """Build the in-memory dependency graph of a pipeline."""
        await self._require_pipeline(pipeline_id)

        result = await self.db.execute(
            select(PipelinePort).where(PipelinePort.pipeline_id == pipeline_id)
        )
        members = list(result.scalars().all())
        deps = await self._dependencies_of([m.port_id for m in members])

        return DependencyGraph(
            PortNode(
                port_id=m.port_id,
                order=m.group_order,
                status=m.status,
                depends_on=sorted(deps.get(m.port_id, ())),
            )
            for m in members
        )

    async def next_runnable(self, pipeline_id: str) -> list[str]:
        """Pending ports whose dependencies are complete, in wave order."""
        graph = await self.graph(pipeline_id)
        return graph.ready()

    async def running(self, pipeline_id: str) -> list[str]:
        await self._require_pipeline(pipeline_id)
        result = await self.db.execute(
            select(PipelinePort.port_id)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .where(PipelinePort.status == PortStatus.RUNNING)
            .order_by(PipelinePort.group_order, PipelinePort.port_id)
        )
        return list(result.scalars().all())

    async def execution_plan(self, pipeline_id: str) -> ExecutionPlan:
        """Ports grouped by group_order with their dependencies and status."""
        graph = await self.graph(pipeline_id)

        groups: dict[int, list[PortExecution]] = defaultdict(list)
        for pid in sorted(graph.nodes, key=lambda p: (graph.nodes[p].order, p)):
            node = graph.nodes[pid]
            groups[node.order].append(
                PortExecution(port_id=pid, dependencies=node.depends_on, status=node.status)
            )

        return ExecutionPlan(
            pipeline_id=pipeline_id,
            groups=[ExecutionGroup(order=order, ports=ports) for order, ports in sorted(groups.items())],
            total_ports=len(graph.nodes),
        )

    async def stats(self, pipeline_id: str) -> GraphStats:
        graph = await self.graph(pipeline_id)
        return graph.stats()

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def _require_pipeline(self, pipeline_id: str) -> None:
        if await self.db.get(Pipeline, pipeline_id) is None:
            raise NotFoundError("Pipeline", pipeline_id)

    async def _require_membership(self, pipeline_id: str, port_id: str) -> None:
        await self._require_pipeline(pipeline_id)
        if await self.db.get(PipelinePort, (pipeline_id, port_id)) is None:
            raise NotFoundError("Port", f"{pipeline_id}/{port_id}")

    async def _dependencies_of(self, port_ids: list[str]) -> dict[str, set[str]]:
        if not port_ids:
            return {}
        result = await self.db.execute(
            select(PortDependency.port_id, PortDependency.depends_on)
            .where(PortDependency.port_id.in_(port_ids))
        )
        deps: dict[str, set[str]] = defaultdict(set)
        for port_id, depends_on in result.all():
            deps[port_id].add(depends_on)
        return deps

    async def _statuses(self, pipeline_id: str, port_ids: list[str]) -> dict[str, PortStatus]:
        result = await self.db.execute(
            select(PipelinePort.port_id, PipelinePort.status)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .where(PipelinePort.port_id.in_(port_ids))
        )
        return {port_id: status for port_id, status in result.all()}
