"""
Port Coordinator - Claim Dispatch Tests
=======================================

Claiming a port: dependency check, all-or-nothing locks, single winner.
"""

import pytest

from portcoord.core.coordination import PipelineService, PortDispatcher, ResourceLockManager
from portcoord.core.exceptions import (
    DependencyBlockedError,
    InvalidTransitionError,
    LockConflictError,
)
from portcoord.core.models import PortStatus


@pytest.fixture
async def plan(pipelines: PipelineService) -> str:
    await pipelines.create("p", "Plan")
    await pipelines.add_port("p", "x", group_order=1)
    await pipelines.add_port("p", "y", group_order=2, depends_on=["x"])
    return "p"


# ==========================================================================
# Successful claims
# ==========================================================================

class TestClaim:
    """Tests for claim_port on eligible ports."""

    async def test_claim_locks_and_starts(
        self, dispatcher: PortDispatcher, locks: ResourceLockManager, plan: str
    ):
        claim = await dispatcher.claim_port(plan, "x", "s1", ["moduleB", "moduleA", "moduleA"])

        assert claim.status == PortStatus.RUNNING
        assert claim.resources == ["moduleA", "moduleB"]
        assert [(l.resource, l.holder_id) for l in await locks.list_all()] == [
            ("moduleA", "s1"),
            ("moduleB", "s1"),
        ]

    async def test_blocked_port_takes_no_locks(
        self, dispatcher: PortDispatcher, locks: ResourceLockManager, plan: str
    ):
        with pytest.raises(DependencyBlockedError) as exc_info:
            await dispatcher.claim_port(plan, "y", "s1", ["moduleA"])

        assert exc_info.value.blocking == ["x"]
        assert await locks.list_all() == []


# ==========================================================================
# Single winner
# ==========================================================================

class TestSingleWinner:
    """Tests that a port is owned by at most one claimant."""

    async def test_second_claim_without_resources_refused(
        self, dispatcher: PortDispatcher, pipelines: PipelineService, plan: str
    ):
        await dispatcher.claim_port(plan, "x", "s1", [])

        with pytest.raises(InvalidTransitionError):
            await dispatcher.claim_port(plan, "x", "s2", [])

        assert (await pipelines.get_port(plan, "x")).status == PortStatus.RUNNING

    async def test_second_claim_takes_no_locks(
        self, dispatcher: PortDispatcher, locks: ResourceLockManager, plan: str
    ):
        await dispatcher.claim_port(plan, "x", "s1", ["moduleA"])

        with pytest.raises(InvalidTransitionError):
            await dispatcher.claim_port(plan, "x", "s2", ["moduleB"])

        assert [(l.resource, l.holder_id) for l in await locks.list_all()] == [("moduleA", "s1")]

    async def test_finished_port_refused(
        self, dispatcher: PortDispatcher, pipelines: PipelineService, plan: str
    ):
        await pipelines.update_port_status(plan, "x", PortStatus.SKIPPED)

        with pytest.raises(InvalidTransitionError):
            await dispatcher.claim_port(plan, "x", "s1", [])

    async def test_start_port_only_from_pending(self, pipelines: PipelineService, plan: str):
        started = await pipelines.start_port(plan, "x")
        assert started.status == PortStatus.RUNNING

        with pytest.raises(InvalidTransitionError):
            await pipelines.start_port(plan, "x")


# ==========================================================================
# Rollback
# ==========================================================================

class TestRollback:
    """Tests that a failed claim leaves no locks behind."""

    async def test_lock_conflict_releases_earlier_locks(
        self, dispatcher: PortDispatcher, locks: ResourceLockManager, plan: str
    ):
        await locks.acquire("moduleB", "other")

        with pytest.raises(LockConflictError):
            await dispatcher.claim_port(plan, "x", "s1", ["moduleA", "moduleB"])

        assert [(l.resource, l.holder_id) for l in await locks.list_all()] == [("moduleB", "other")]

    async def test_unexpected_error_releases_locks(
        self,
        dispatcher: PortDispatcher,
        locks: ResourceLockManager,
        pipelines: PipelineService,
        plan: str,
        monkeypatch,
    ):
        async def broken_start(pipeline_id, port_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(dispatcher.pipelines, "start_port", broken_start)

        with pytest.raises(RuntimeError):
            await dispatcher.claim_port(plan, "x", "s1", ["moduleA", "moduleB"])

        assert await locks.list_all() == []
        assert (await pipelines.get_port(plan, "x")).status == PortStatus.PENDING
