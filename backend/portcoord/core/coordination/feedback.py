"""
Feedback Loop Controller - Bounded implement -> verify -> fix cycles.

An implementer and a verifier iterate on one piece of work. Each failing
verification burns one retry; the update that spends the last retry moves
the loop to ``escalated`` and the caller turns that into an escalation.
"""

from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.config import settings
from portcoord.core.coordination.messages import DirectMessageStore, MessageRelay
from portcoord.core.coordination.triggers import EscalationTriggerEngine
from portcoord.core.exceptions import (
    ConflictError,
    LoopClosedError,
    NotFoundError,
    RetriesExhaustedError,
    ValidationError,
)
from portcoord.core.models import FeedbackLoop, FeedbackLoopStatus, MessageType, utcnow
from portcoord.core.schemas import (
    FeedbackResult,
    FeedbackStats,
    VerificationResult,
    WorkerContext,
)

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (
    FeedbackLoopStatus.SUCCESS,
    FeedbackLoopStatus.FAILED,
    FeedbackLoopStatus.ESCALATED,
)


class FeedbackLoopController:
    """
    Drives feedback loops through their state machine.

    State Machine:
        running -> success     verification passed
        running -> failed      cancelled by the caller
        running -> escalated   the last retry failed

    Guarantees:
    - current_retry never exceeds max_retries
    - A terminal loop accepts no further results
    - Each result is applied with a compare-and-set on the observed
      (status, current_retry), so a duplicate delivery cannot count twice
    """

    def __init__(
        self,
        db: AsyncSession,
        relay: Optional[MessageRelay] = None,
        engine: Optional[EscalationTriggerEngine] = None,
    ):
        self.db = db
        self.relay = relay if relay is not None else DirectMessageStore(db)
        self.engine = engine or EscalationTriggerEngine()

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def create(
        self,
        channel_id: str,
        implementer_id: str,
        verifier_id: str,
        port_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> FeedbackLoop:
        """
        Start a loop between an implementer and a verifier.

        A missing or non-positive ``max_retries`` falls back to the
        configured default.
        """
        if not channel_id or not implementer_id or not verifier_id:
            raise ValidationError("Channel, implementer and verifier are required")
        if not max_retries or max_retries <= 0:
            max_retries = settings.FEEDBACK_DEFAULT_MAX_RETRIES

        loop = FeedbackLoop(
            channel_id=channel_id,
            implementer_id=implementer_id,
            verifier_id=verifier_id,
            port_id=port_id,
            max_retries=max_retries,
            current_retry=0,
            status=FeedbackLoopStatus.RUNNING,
        )
        self.db.add(loop)
        await self.db.commit()
        await self.db.refresh(loop)

        logger.info(
            "Feedback loop created",
            loop_id=loop.id,
            channel_id=channel_id,
            implementer=implementer_id,
            verifier=verifier_id,
            port_id=port_id,
            max_retries=max_retries,
        )
        return loop

    async def mark_failed(self, loop_id: str) -> FeedbackLoop:
        """
        Cancel a running loop. Only persisted state changes; stopping the
        workers is up to the caller.
        """
        loop = await self.get(loop_id)
        if loop.is_terminal:
            raise LoopClosedError(loop.id, loop.status.value)

        now = utcnow()
        await self._compare_and_set(
            loop,
            status=FeedbackLoopStatus.FAILED,
            completed_at=now,
        )

        logger.info("Feedback loop failed", loop_id=loop_id, current_retry=loop.current_retry)
        return loop

    async def process_verification_result(
        self,
        loop_id: str,
        result: VerificationResult,
        context: Optional[WorkerContext] = None,
    ) -> FeedbackResult:
        """
        Apply one verification outcome.

        Success closes the loop. A failure consumes a retry and relays the
        failure detail from the verifier to the implementer, unless it was
        the last retry.

        Args:
            loop_id: Loop to update
            result: Verifier's report
            context: Optional worker snapshot; when given, the trigger engine
                is consulted and fired drafts are attached to the result, also
                when this failure exhausts the loop

        Returns:
            FeedbackResult for this iteration

        Raises:
            NotFoundError: Unknown loop
            LoopClosedError: The loop is already terminal
            RetriesExhaustedError: This failure used the last retry; the loop
                is now ``escalated``
        """
        loop = await self.get(loop_id)
        if loop.is_terminal:
            logger.info("Verification result rejected", loop_id=loop_id, status=loop.status.value)
            raise LoopClosedError(loop.id, loop.status.value)

        iteration = loop.current_retry + 1
        now = utcnow()

        if result.success:
            await self._compare_and_set(
                loop,
                status=FeedbackLoopStatus.SUCCESS,
                last_feedback_at=now,
                completed_at=now,
            )
            logger.info("Feedback loop succeeded", loop_id=loop_id, iteration=iteration)
            return self._record(loop, iteration, result)

        changes = {"current_retry": iteration, "last_feedback_at": now}
        if iteration >= loop.max_retries:
            changes.update(status=FeedbackLoopStatus.ESCALATED, completed_at=now)
        await self._compare_and_set(loop, **changes)

        record = self._record(loop, iteration, result)
        if context is not None:
            record.escalations = self.engine.check_triggers(self._with_loop(context, loop))

        if loop.status == FeedbackLoopStatus.ESCALATED:
            logger.warning(
                "Feedback loop exhausted retries",
                loop_id=loop_id,
                current_retry=loop.current_retry,
                max_retries=loop.max_retries,
            )
            raise RetriesExhaustedError(loop, record)

        await self.relay.send(
            loop.channel_id,
            loop.verifier_id,
            loop.implementer_id,
            result.model_dump(mode="json"),
            MessageType.FEEDBACK,
        )

        logger.info(
            "Verification failed, retry requested",
            loop_id=loop_id,
            current_retry=loop.current_retry,
            max_retries=loop.max_retries,
            failed_checks=[c.name for c in result.failed_checks],
        )
        return record

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get(self, loop_id: str) -> FeedbackLoop:
        loop = await self.db.get(FeedbackLoop, loop_id)
        if loop is None:
            raise NotFoundError("Feedback loop", loop_id)
        return loop

    async def get_by_channel(self, channel_id: str) -> FeedbackLoop:
        """Most recent loop on a channel."""
        result = await self.db.execute(
            select(FeedbackLoop)
            .where(FeedbackLoop.channel_id == channel_id)
            .order_by(FeedbackLoop.created_at.desc())
            .limit(1)
        )
        loop = result.scalar_one_or_none()
        if loop is None:
            raise NotFoundError("Feedback loop for channel", channel_id)
        return loop

    async def get_active_for_port(self, port_id: str) -> FeedbackLoop:
        result = await self.db.execute(
            select(FeedbackLoop)
            .where(FeedbackLoop.port_id == port_id)
            .where(FeedbackLoop.status == FeedbackLoopStatus.RUNNING)
            .order_by(FeedbackLoop.created_at.desc())
            .limit(1)
        )
        loop = result.scalar_one_or_none()
        if loop is None:
            raise NotFoundError("Active feedback loop for port", port_id)
        return loop

    async def list_active(self, limit: Optional[int] = None) -> list[FeedbackLoop]:
        if not limit or limit <= 0:
            limit = settings.FEEDBACK_ACTIVE_LIST_LIMIT

        result = await self.db.execute(
            select(FeedbackLoop)
            .where(FeedbackLoop.status == FeedbackLoopStatus.RUNNING)
            .order_by(FeedbackLoop.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def stats(self) -> FeedbackStats:
        """Counts by status; averages and rates cover terminal loops only."""
        stats = FeedbackStats()

        result = await self.db.execute(
            select(FeedbackLoop.status, func.count()).group_by(FeedbackLoop.status)
        )
        for status, count in result.all():
            stats.total_loops += count
            if status == FeedbackLoopStatus.SUCCESS:
                stats.success_loops = count
            elif status == FeedbackLoopStatus.FAILED:
                stats.failed_loops = count
            elif status == FeedbackLoopStatus.ESCALATED:
                stats.escalated_loops = count
            elif status == FeedbackLoopStatus.RUNNING:
                stats.running_loops = count

        result = await self.db.execute(
            select(func.coalesce(func.avg(FeedbackLoop.current_retry), 0))
            .where(FeedbackLoop.status.in_(TERMINAL_STATUSES))
        )
        stats.avg_retries = float(result.scalar() or 0)

        completed = stats.success_loops + stats.failed_loops + stats.escalated_loops
        if completed > 0:
            stats.success_rate = stats.success_loops / completed * 100

        return stats

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _compare_and_set(self, loop: FeedbackLoop, **changes) -> None:
        """
        Write ``changes`` only if the row still holds the status and retry
        count we read. Losing the race means another result got there first.
        """
        observed_retry = loop.current_retry
        result = await self.db.execute(
            update(FeedbackLoop)
            .where(FeedbackLoop.id == loop.id)
            .where(FeedbackLoop.status == FeedbackLoopStatus.RUNNING)
            .where(FeedbackLoop.current_retry == observed_retry)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(loop)

        if (result.rowcount or 0) == 1:
            return

        if loop.is_terminal:
            logger.info("Verification result lost race", loop_id=loop.id, status=loop.status.value)
            raise LoopClosedError(loop.id, loop.status.value)
        raise ConflictError(
            f"Feedback loop '{loop.id}' changed concurrently",
            loop_id=loop.id,
            observed_retry=observed_retry,
            current_retry=loop.current_retry,
        )

    @staticmethod
    def _record(loop: FeedbackLoop, iteration: int, result: VerificationResult) -> FeedbackResult:
        return FeedbackResult(
            loop_id=loop.id,
            iteration=iteration,
            success=result.success,
            checks_passed=result.passed_checks,
            checks_failed=result.failed_count,
            coverage=result.coverage,
            failed_checks=result.failed_checks,
            suggestions=result.suggestions,
            status=loop.status,
            current_retry=loop.current_retry,
            max_retries=loop.max_retries,
        )

    @staticmethod
    def _with_loop(ctx: WorkerContext, loop: FeedbackLoop) -> WorkerContext:
        """Fill the snapshot's retry fields (and missing ids) from the loop."""
        return ctx.model_copy(
            update={
                "session_id": ctx.session_id or loop.implementer_id,
                "port_id": ctx.port_id or loop.port_id,
                "retries": loop.current_retry,
                "max_retries": loop.max_retries,
            }
        )
