"""
Port Coordinator - Dependency Resolver Tests
============================================

Run eligibility, wave ordering and the in-memory dependency graph.
"""

import random

import pytest

from portcoord.core.coordination import DependencyResolver, PipelineService
from portcoord.core.coordination.resolver import DependencyGraph, PortNode
from portcoord.core.exceptions import DependencyCycleError, NotFoundError
from portcoord.core.models import PortStatus


# ==========================================================================
# Fixtures
# ==========================================================================

@pytest.fixture
async def xyz_plan(pipelines: PipelineService) -> str:
    """X in wave 1; Y and Z in wave 2, both depending on X."""
    await pipelines.create("plan-a", "Scenario A")
    await pipelines.add_port("plan-a", "X", group_order=1)
    await pipelines.add_port("plan-a", "Y", group_order=2, depends_on=["X"])
    await pipelines.add_port("plan-a", "Z", group_order=2, depends_on=["X"])
    return "plan-a"


# ==========================================================================
# CanRun
# ==========================================================================

class TestCanRun:
    """Tests for single-port eligibility."""

    async def test_wave_scenario(
        self, pipelines: PipelineService, resolver: DependencyResolver, xyz_plan: str
    ):
        """Y and Z are blocked by X until X completes."""
        assert (await resolver.can_run(xyz_plan, "X")).eligible is True

        for port in ("Y", "Z"):
            eligibility = await resolver.can_run(xyz_plan, port)
            assert eligibility.eligible is False
            assert eligibility.blocking == ["X"]

        await pipelines.update_port_status(xyz_plan, "X", "running")
        assert (await resolver.can_run(xyz_plan, "Y")).blocking == ["X"]

        await pipelines.update_port_status(xyz_plan, "X", "complete")
        for port in ("Y", "Z"):
            eligibility = await resolver.can_run(xyz_plan, port)
            assert eligibility.eligible is True
            assert eligibility.blocking == []

    async def test_no_dependencies_is_runnable(self, pipelines: PipelineService, resolver: DependencyResolver):
        await pipelines.create("p", "solo")
        await pipelines.add_port("p", "only")

        assert (await resolver.can_run("p", "only")).eligible is True

    async def test_dependency_outside_plan_blocks(
        self, pipelines: PipelineService, resolver: DependencyResolver
    ):
        """An edge to a port the plan does not contain never unblocks."""
        await pipelines.create("p", "partial")
        await pipelines.add_port("p", "api", depends_on=["schema"])

        eligibility = await resolver.can_run("p", "api")
        assert eligibility.eligible is False
        assert eligibility.blocking == ["schema"]

    async def test_status_is_plan_scoped(self, pipelines: PipelineService, resolver: DependencyResolver):
        """Completion in one plan does not unblock another."""
        for plan in ("p1", "p2"):
            await pipelines.create(plan, plan)
            await pipelines.add_port(plan, "base")
            await pipelines.add_port(plan, "top", depends_on=["base"])

        await pipelines.update_port_status("p1", "base", "complete")

        assert (await resolver.can_run("p1", "top")).eligible is True
        assert (await resolver.can_run("p2", "top")).blocking == ["base"]

    async def test_failed_dependency_blocks(self, pipelines: PipelineService, resolver: DependencyResolver):
        await pipelines.create("p", "failing")
        await pipelines.add_port("p", "a")
        await pipelines.add_port("p", "b", depends_on=["a"])
        await pipelines.update_port_status("p", "a", "failed")

        assert (await resolver.can_run("p", "b")).blocking == ["a"]

    async def test_blocking_list_is_sorted(self, pipelines: PipelineService, resolver: DependencyResolver):
        await pipelines.create("p", "fan-in")
        for dep in ("c", "a", "b"):
            await pipelines.add_port("p", dep)
        await pipelines.add_port("p", "sink", depends_on=["c", "a", "b"])
        await pipelines.update_port_status("p", "b", "complete")

        assert (await resolver.can_run("p", "sink")).blocking == ["a", "c"]

    async def test_unknown_pipeline(self, resolver: DependencyResolver):
        with pytest.raises(NotFoundError):
            await resolver.can_run("missing", "X")

    async def test_port_not_in_plan(self, resolver: DependencyResolver, xyz_plan: str):
        with pytest.raises(NotFoundError):
            await resolver.can_run(xyz_plan, "W")

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234, 9001])
    async def test_random_acyclic_graphs(
        self, pipelines: PipelineService, resolver: DependencyResolver, seed: int
    ):
        """CanRun is true iff every dependency is complete; blocking is the rest."""
        rng = random.Random(seed)
        ports = [f"port-{i:02d}" for i in range(12)]

        await pipelines.create("rand", f"random {seed}")
        deps: dict[str, list[str]] = {}
        for i, port in enumerate(ports):
            # Edges only point at earlier ports, so the graph is acyclic
            deps[port] = sorted(rng.sample(ports[:i], k=rng.randint(0, min(i, 3))))
            await pipelines.add_port("rand", port, group_order=i // 4, depends_on=deps[port])

        statuses = {}
        for port in ports:
            statuses[port] = rng.choice([PortStatus.PENDING, PortStatus.COMPLETE, PortStatus.FAILED])
            if statuses[port] != PortStatus.PENDING:
                await pipelines.update_port_status("rand", port, statuses[port])

        for port in ports:
            expected = [d for d in deps[port] if statuses[d] != PortStatus.COMPLETE]
            eligibility = await resolver.can_run("rand", port)
            assert eligibility.blocking == expected
            assert eligibility.eligible is (not expected)


# ==========================================================================
# Plan views
# ==========================================================================

class TestPlanViews:
    """Tests for next_runnable, running and the execution plan."""

    async def test_next_runnable(self, pipelines: PipelineService, resolver: DependencyResolver, xyz_plan: str):
        assert await resolver.next_runnable(xyz_plan) == ["X"]

        await pipelines.update_port_status(xyz_plan, "X", "running")
        assert await resolver.next_runnable(xyz_plan) == []
        assert await resolver.running(xyz_plan) == ["X"]

        await pipelines.update_port_status(xyz_plan, "X", "complete")
        assert await resolver.next_runnable(xyz_plan) == ["Y", "Z"]

    async def test_execution_plan_groups(self, resolver: DependencyResolver, xyz_plan: str):
        plan = await resolver.execution_plan(xyz_plan)

        assert plan.total_ports == 3
        assert [g.order for g in plan.groups] == [1, 2]
        assert [p.port_id for p in plan.groups[1].ports] == ["Y", "Z"]
        assert plan.groups[1].ports[0].dependencies == ["X"]
        assert plan.groups[0].ports[0].status == PortStatus.PENDING

    async def test_graph_stats(self, resolver: DependencyResolver, xyz_plan: str):
        stats = await resolver.stats(xyz_plan)

        assert stats.total_ports == 3
        assert stats.pending_ports == 3
        assert stats.levels == 2
        assert stats.max_parallelism == 2
        assert len(stats.critical_path) == 2
        assert stats.critical_path[0] == "X"


# ==========================================================================
# In-memory graph
# ==========================================================================

class TestDependencyGraph:
    """Tests for the pure DependencyGraph."""

    def test_topological_levels(self):
        graph = DependencyGraph([
            PortNode("a"),
            PortNode("b", depends_on=["a"]),
            PortNode("c", depends_on=["a"]),
            PortNode("d", depends_on=["b", "c"]),
        ])

        assert graph.topological_levels() == [["a"], ["b", "c"], ["d"]]
        assert graph.has_cycle() is False

    def test_levels_ignore_external_dependencies(self):
        graph = DependencyGraph([PortNode("a", depends_on=["elsewhere"])])

        assert graph.topological_levels() == [["a"]]
        assert graph.ready() == []

    def test_cycle_detected(self):
        graph = DependencyGraph([
            PortNode("a", depends_on=["c"]),
            PortNode("b", depends_on=["a"]),
            PortNode("c", depends_on=["b"]),
        ])

        assert graph.has_cycle() is True
        with pytest.raises(DependencyCycleError) as exc_info:
            graph.topological_levels()
        assert set(exc_info.value.cycle) == {"a", "b", "c"}
        assert graph.critical_path() == []

    def test_cycle_excludes_downstream_ports(self):
        graph = DependencyGraph([
            PortNode("a", depends_on=["c"]),
            PortNode("b", depends_on=["a"]),
            PortNode("c", depends_on=["b"]),
            PortNode("d", depends_on=["a"]),
            PortNode("e", depends_on=["d"]),
        ])

        with pytest.raises(DependencyCycleError) as exc_info:
            graph.topological_levels()

        assert exc_info.value.cycle == ["a", "c", "b", "a"]

    def test_critical_path(self):
        graph = DependencyGraph([
            PortNode("a"),
            PortNode("b", depends_on=["a"]),
            PortNode("c", depends_on=["b"]),
            PortNode("x"),
            PortNode("y", depends_on=["x"]),
        ])

        assert graph.critical_path() == ["a", "b", "c"]

    def test_ready_and_dependents(self):
        graph = DependencyGraph([
            PortNode("a", status=PortStatus.COMPLETE),
            PortNode("b", depends_on=["a"]),
            PortNode("c", depends_on=["a", "b"]),
        ])

        assert graph.ready() == ["b"]
        assert graph.dependents("a") == ["b", "c"]
        assert graph.dependencies("c") == ["a", "b"]
        assert graph.dependencies("missing") == []

    def test_empty_graph(self):
        stats = DependencyGraph([]).stats()

        assert stats.total_ports == 0
        assert stats.levels == 0
        assert stats.max_parallelism == 0
        assert stats.critical_path == []
