"""
Port Coordinator - Feedback Loop Tests
======================================

Bounded implement/verify cycles: retries, escalation, stale results.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.coordination import (
    DirectMessageStore,
    EscalationService,
    FeedbackLoopController,
)
from portcoord.core.exceptions import (
    LoopClosedError,
    NotFoundError,
    RetriesExhaustedError,
)
from portcoord.core.models import EscalationType, FeedbackLoopStatus, MessageType
from portcoord.core.schemas import FailedCheck, VerificationResult, WorkerContext


def failing(*names: str) -> VerificationResult:
    return VerificationResult(
        success=False,
        total_checks=10,
        passed_checks=10 - len(names),
        failed_checks=[FailedCheck(name=n, expected="pass", actual="fail") for n in names],
        suggestions=["check the fixture setup"],
    )


PASSING = VerificationResult(success=True, total_checks=10, passed_checks=10, coverage=87.5)


class RecordingRelay:
    """Relay that keeps sent messages in memory."""

    def __init__(self):
        self.sent = []

    async def send(self, channel_id, from_id, to_id, payload, type=MessageType.FEEDBACK):
        self.sent.append((channel_id, from_id, to_id, payload, type))


@pytest.fixture
async def loop(feedback: FeedbackLoopController):
    return await feedback.create("ch-1", "impl-1", "verify-1", port_id="api", max_retries=3)


# ==========================================================================
# Creation and lookup
# ==========================================================================

class TestCreate:
    """Tests for creating and finding loops."""

    async def test_create(self, loop):
        assert loop.status == FeedbackLoopStatus.RUNNING
        assert loop.current_retry == 0
        assert loop.max_retries == 3

    @pytest.mark.parametrize("max_retries", [None, 0, -2])
    async def test_default_max_retries(self, feedback: FeedbackLoopController, max_retries):
        created = await feedback.create("ch", "impl", "verify", max_retries=max_retries)

        assert created.max_retries == 3

    async def test_lookups(self, feedback: FeedbackLoopController, loop):
        assert (await feedback.get(loop.id)).id == loop.id
        assert (await feedback.get_by_channel("ch-1")).id == loop.id
        assert (await feedback.get_active_for_port("api")).id == loop.id
        assert [l.id for l in await feedback.list_active()] == [loop.id]

    async def test_missing_loop(self, feedback: FeedbackLoopController):
        with pytest.raises(NotFoundError):
            await feedback.get("missing")
        with pytest.raises(NotFoundError):
            await feedback.get_by_channel("missing")
        with pytest.raises(NotFoundError):
            await feedback.get_active_for_port("missing")


# ==========================================================================
# Verification results
# ==========================================================================

class TestProcessResult:
    """Tests for applying verification results."""

    async def test_retries_then_escalates(self, feedback: FeedbackLoopController, loop):
        """Three failures with max 3: running, running, then escalated."""
        first = await feedback.process_verification_result(loop.id, failing("test_login"))
        assert (first.current_retry, first.status) == (1, FeedbackLoopStatus.RUNNING)
        assert first.iteration == 1

        second = await feedback.process_verification_result(loop.id, failing("test_login"))
        assert (second.current_retry, second.status) == (2, FeedbackLoopStatus.RUNNING)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await feedback.process_verification_result(loop.id, failing("test_login", "test_logout"))

        error = exc_info.value
        assert error.result.current_retry == 3
        assert error.result.status == FeedbackLoopStatus.ESCALATED
        assert error.context["failed_checks"] == ["test_login", "test_logout"]

        stored = await feedback.get(loop.id)
        assert stored.status == FeedbackLoopStatus.ESCALATED
        assert stored.current_retry == 3
        assert stored.completed_at is not None

    async def test_success_closes_loop(self, feedback: FeedbackLoopController, loop):
        await feedback.process_verification_result(loop.id, failing("test_a"))
        result = await feedback.process_verification_result(loop.id, PASSING)

        assert result.success is True
        assert result.iteration == 2
        assert result.coverage == 87.5
        assert result.status == FeedbackLoopStatus.SUCCESS
        assert result.current_retry == 1
        assert await feedback.list_active() == []

    async def test_stale_result_after_escalation_rejected(self, feedback: FeedbackLoopController):
        loop = await feedback.create("ch", "impl", "verify", max_retries=1)
        with pytest.raises(RetriesExhaustedError):
            await feedback.process_verification_result(loop.id, failing("t"))

        with pytest.raises(LoopClosedError):
            await feedback.process_verification_result(loop.id, failing("t"))
        with pytest.raises(LoopClosedError):
            await feedback.process_verification_result(loop.id, PASSING)

        assert (await feedback.get(loop.id)).current_retry == 1

    async def test_result_after_success_rejected(self, feedback: FeedbackLoopController, loop):
        await feedback.process_verification_result(loop.id, PASSING)

        with pytest.raises(LoopClosedError):
            await feedback.process_verification_result(loop.id, failing("t"))

    async def test_failure_is_relayed_to_implementer(self, db_session: AsyncSession, loop):
        relay = RecordingRelay()
        controller = FeedbackLoopController(db_session, relay=relay)

        await controller.process_verification_result(loop.id, failing("test_a"))

        [(channel, sender, recipient, payload, kind)] = relay.sent
        assert (channel, sender, recipient, kind) == ("ch-1", "verify-1", "impl-1", MessageType.FEEDBACK)
        assert payload["failed_checks"][0]["name"] == "test_a"

    async def test_default_relay_persists_message(self, db_session: AsyncSession, feedback, loop):
        await feedback.process_verification_result(loop.id, failing("test_a"))

        store = DirectMessageStore(db_session)
        [message] = await store.pending_for("impl-1")
        assert message.type == MessageType.FEEDBACK
        assert message.from_session == "verify-1"

        await store.mark_processed(message.id)
        assert await store.pending_for("impl-1") == []
        assert (await store.get(message.id)).delivered_at is not None

    async def test_no_relay_on_success_or_escalation(self, db_session: AsyncSession):
        relay = RecordingRelay()
        controller = FeedbackLoopController(db_session, relay=relay)
        done = await controller.create("a", "impl", "verify", max_retries=2)
        exhausted = await controller.create("b", "impl", "verify", max_retries=1)

        await controller.process_verification_result(done.id, PASSING)
        with pytest.raises(RetriesExhaustedError):
            await controller.process_verification_result(exhausted.id, failing("t"))

        assert relay.sent == []

    async def test_context_attaches_fired_triggers(self, feedback: FeedbackLoopController, loop):
        ctx = WorkerContext(tokens_used=970, token_budget=1000, build_failed=True)

        result = await feedback.process_verification_result(loop.id, failing("t"), context=ctx)

        assert [d.type for d in result.escalations] == [
            EscalationType.BUDGET_EXCEEDED,
            EscalationType.BUILD_FAILED,
        ]
        assert result.escalations[0].from_session == "impl-1"
        assert result.escalations[0].context["retries"] == 1

    async def test_context_triggers_kept_on_exhaustion(self, feedback: FeedbackLoopController):
        loop = await feedback.create("ch", "impl", "verify", max_retries=1)
        ctx = WorkerContext(tokens_used=970, token_budget=1000, build_failed=True)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await feedback.process_verification_result(loop.id, failing("t"), context=ctx)

        assert [d.type for d in exc_info.value.result.escalations] == [
            EscalationType.VERIFICATION_FAILED,
            EscalationType.BUDGET_EXCEEDED,
            EscalationType.BUILD_FAILED,
        ]

    async def test_exhausted_becomes_escalation(
        self, feedback: FeedbackLoopController, escalations: EscalationService
    ):
        loop = await feedback.create("ch", "impl", "verify", port_id="api", max_retries=1)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await feedback.process_verification_result(loop.id, failing("test_a"))

        record = await escalations.raise_exhausted(exc_info.value)

        assert record.type == EscalationType.VERIFICATION_FAILED
        assert record.from_port == "api"
        assert record.context["loop_id"] == loop.id
        assert "test_a" in record.issue


# ==========================================================================
# Cancellation and statistics
# ==========================================================================

class TestFailAndStats:
    """Tests for mark_failed and stats."""

    async def test_mark_failed(self, feedback: FeedbackLoopController, loop):
        failed = await feedback.mark_failed(loop.id)
        assert failed.status == FeedbackLoopStatus.FAILED

        with pytest.raises(LoopClosedError):
            await feedback.mark_failed(loop.id)

    async def test_stats(self, feedback: FeedbackLoopController):
        ok = await feedback.create("a", "i", "v", max_retries=3)
        await feedback.process_verification_result(ok.id, failing("t"))
        await feedback.process_verification_result(ok.id, PASSING)

        escalated = await feedback.create("b", "i", "v", max_retries=1)
        with pytest.raises(RetriesExhaustedError):
            await feedback.process_verification_result(escalated.id, failing("t"))

        cancelled = await feedback.create("c", "i", "v")
        await feedback.mark_failed(cancelled.id)

        await feedback.create("d", "i", "v")

        stats = await feedback.stats()

        assert stats.total_loops == 4
        assert (stats.success_loops, stats.escalated_loops, stats.failed_loops, stats.running_loops) == (1, 1, 1, 1)
        assert stats.avg_retries == pytest.approx(2 / 3)
        assert stats.success_rate == pytest.approx(100 / 3)

    async def test_stats_empty(self, feedback: FeedbackLoopController):
        stats = await feedback.stats()

        assert stats.total_loops == 0
        assert stats.avg_retries == 0.0
        assert stats.success_rate == 0.0
