"""
Escalation Service - Persisted, human-actionable escalation log.

Records come from two places: an operator raising one by hand, or a fired
trigger / exhausted feedback loop. Records are resolved or dismissed and
never reopened; a recurring problem gets a new record.
"""

from typing import Any, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.config import settings
from portcoord.core.coordination.triggers import EscalationTriggerEngine
from portcoord.core.exceptions import InvalidTransitionError, NotFoundError, RetriesExhaustedError
from portcoord.core.models import (
    Escalation,
    EscalationStatus,
    EscalationType,
    Severity,
    utcnow,
)
from portcoord.core.schemas import EscalationDraft, EscalationStats, WorkerContext

logger = structlog.get_logger(__name__)

AUTO_RESOLUTION = "Auto-resolved"


class EscalationService:
    """
    Escalation CRUD.

    Lifecycle:
        open -> resolved
        open -> dismissed

    Drafts flagged ``auto_resolve`` (advisory warnings) are stored already
    resolved so they leave a trace without needing a human.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        issue: str,
        type: EscalationType = EscalationType.MANUAL_REVIEW,
        severity: Severity = Severity.MEDIUM,
        suggestion: Optional[str] = None,
        from_session: Optional[str] = None,
        to_session: Optional[str] = None,
        from_port: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Escalation:
        """Raise an escalation by hand."""
        escalation = Escalation(
            type=type,
            severity=severity,
            issue=issue,
            suggestion=suggestion,
            from_session=from_session,
            to_session=to_session,
            from_port=from_port,
            context=context,
            status=EscalationStatus.OPEN,
        )
        self.db.add(escalation)
        await self.db.commit()
        await self.db.refresh(escalation)

        logger.warning(
            "Escalation raised",
            escalation_id=escalation.id,
            type=type.value,
            severity=severity.value,
            from_session=from_session,
            from_port=from_port,
        )
        return escalation

    async def record(self, draft: EscalationDraft) -> Escalation:
        """Persist one draft produced by the trigger engine."""
        escalation = Escalation(
            type=draft.type,
            severity=draft.severity,
            issue=draft.issue,
            suggestion=draft.suggestion,
            from_session=draft.from_session,
            from_port=draft.from_port,
            context=draft.context or None,
            status=EscalationStatus.OPEN,
        )
        if draft.auto_resolve:
            escalation.status = EscalationStatus.RESOLVED
            escalation.resolution = AUTO_RESOLUTION
            escalation.resolved_at = utcnow()

        self.db.add(escalation)
        await self.db.commit()
        await self.db.refresh(escalation)

        log = logger.info if draft.auto_resolve else logger.warning
        log(
            "Escalation recorded from trigger",
            escalation_id=escalation.id,
            type=draft.type.value,
            severity=draft.severity.value,
            status=escalation.status.value,
        )
        return escalation

    async def raise_from_triggers(
        self,
        ctx: WorkerContext,
        engine: Optional[EscalationTriggerEngine] = None,
    ) -> list[Escalation]:
        """Evaluate the triggers against ``ctx`` and persist whatever fired."""
        engine = engine or EscalationTriggerEngine()
        return [await self.record(draft) for draft in engine.check_triggers(ctx)]

    async def raise_exhausted(self, error: RetriesExhaustedError) -> Escalation:
        """Turn an exhausted feedback loop into a verification-failure record."""
        loop = error.loop
        failed = error.context.get("failed_checks", [])

        issue = f"Verification failed after {loop.current_retry}/{loop.max_retries} attempts"
        if failed:
            issue += f": {', '.join(failed)}"

        return await self.create(
            issue=issue,
            type=EscalationType.VERIFICATION_FAILED,
            severity=Severity.HIGH,
            suggestion="Review the failing checks and find the root cause",
            from_session=loop.implementer_id,
            to_session=loop.verifier_id,
            from_port=loop.port_id,
            context={
                "loop_id": loop.id,
                "channel_id": loop.channel_id,
                "current_retry": loop.current_retry,
                "max_retries": loop.max_retries,
                "failed_checks": failed,
            },
        )

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get(self, escalation_id: str) -> Escalation:
        escalation = await self.db.get(Escalation, escalation_id)
        if escalation is None:
            raise NotFoundError("Escalation", escalation_id)
        return escalation

    async def list_escalations(
        self,
        status: Optional[EscalationStatus] = None,
        type: Optional[EscalationType] = None,
        limit: Optional[int] = None,
    ) -> list[Escalation]:
        """Escalations, newest first."""
        query = select(Escalation)
        if status is not None:
            query = query.where(Escalation.status == status)
        if type is not None:
            query = query.where(Escalation.type == type)
        query = query.order_by(Escalation.created_at.desc()).limit(limit or settings.ESCALATION_LIST_LIMIT)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_by_session(self, session_id: str) -> list[Escalation]:
        result = await self.db.execute(
            select(Escalation)
            .where(Escalation.from_session == session_id)
            .order_by(Escalation.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_by_severity(self, min_severity: Severity) -> list[Escalation]:
        """Open escalations at or above ``min_severity``, highest first."""
        wanted = [s for s in Severity if s >= min_severity]
        result = await self.db.execute(
            select(Escalation)
            .where(Escalation.status == EscalationStatus.OPEN)
            .where(Escalation.severity.in_(wanted))
        )
        escalations = list(result.scalars().all())
        escalations.sort(key=lambda e: e.created_at)
        escalations.sort(key=lambda e: e.severity.rank, reverse=True)
        return escalations

    async def open_count(self) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Escalation)
            .where(Escalation.status == EscalationStatus.OPEN)
        )
        return result.scalar() or 0

    async def stats(self) -> EscalationStats:
        stats = EscalationStats()

        result = await self.db.execute(
            select(Escalation.status, func.count()).group_by(Escalation.status)
        )
        for status, count in result.all():
            stats.total += count
            if status == EscalationStatus.OPEN:
                stats.open = count
            elif status == EscalationStatus.RESOLVED:
                stats.resolved = count
            elif status == EscalationStatus.DISMISSED:
                stats.dismissed = count

        result = await self.db.execute(
            select(Escalation.type, func.count()).group_by(Escalation.type)
        )
        stats.by_type = {t.value: count for t, count in result.all()}

        result = await self.db.execute(
            select(Escalation.severity, func.count()).group_by(Escalation.severity)
        )
        stats.by_severity = {s.value: count for s, count in result.all()}

        return stats

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def resolve(self, escalation_id: str, resolution: Optional[str] = None) -> Escalation:
        return await self._close(escalation_id, EscalationStatus.RESOLVED, resolution)

    async def dismiss(self, escalation_id: str, reason: Optional[str] = None) -> Escalation:
        return await self._close(escalation_id, EscalationStatus.DISMISSED, reason)

    async def _close(
        self,
        escalation_id: str,
        status: EscalationStatus,
        resolution: Optional[str],
    ) -> Escalation:
        escalation = await self.get(escalation_id)
        if escalation.status != EscalationStatus.OPEN:
            raise InvalidTransitionError(
                "Escalation", escalation_id, escalation.status.value, status.value
            )

        escalation.status = status
        escalation.resolution = resolution
        escalation.resolved_at = utcnow()
        await self.db.commit()
        await self.db.refresh(escalation)

        logger.info("Escalation closed", escalation_id=escalation_id, status=status.value)
        return escalation
