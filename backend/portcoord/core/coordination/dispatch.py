"""
Port Dispatch - Claim a port for a worker in one call.

Composes the coordination flow: dependency check, resource claim, then
membership status. Each step uses the component that owns it.
"""

from typing import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.coordination.locks import ResourceLockManager
from portcoord.core.coordination.pipelines import PipelineService
from portcoord.core.coordination.resolver import DependencyResolver
from portcoord.core.exceptions import DependencyBlockedError, InvalidTransitionError, ValidationError
from portcoord.core.models import PortStatus
from portcoord.core.schemas import ClaimResponse

logger = structlog.get_logger(__name__)


class PortDispatcher:
    """Claims ports on behalf of worker sessions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.resolver = DependencyResolver(db)
        self.locks = ResourceLockManager(db)
        self.pipelines = PipelineService(db)

    async def claim_port(
        self,
        pipeline_id: str,
        port_id: str,
        holder_id: str,
        resources: Iterable[str] = (),
    ) -> ClaimResponse:
        """
        Claim a port and its resources for ``holder_id``.

        Resources are acquired in sorted order, all or nothing: if any later
        step fails, every lock this call took is released again.

        Raises:
            DependencyBlockedError: Dependencies are not complete yet
            LockConflictError: A resource is held by someone else
            InvalidTransitionError: The port is already running or finished
        """
        if not holder_id:
            raise ValidationError("Holder id must not be empty")

        eligibility = await self.resolver.can_run(pipeline_id, port_id)
        if not eligibility.eligible:
            raise DependencyBlockedError(pipeline_id, port_id, eligibility.blocking)

        member = await self.pipelines.get_port(pipeline_id, port_id)
        if member.status != PortStatus.PENDING:
            raise InvalidTransitionError(
                "Port", f"{pipeline_id}/{port_id}", member.status.value, PortStatus.RUNNING.value
            )

        wanted = sorted({r.strip() for r in resources if r and r.strip()})
        acquired: list[str] = []
        try:
            for resource in wanted:
                await self.locks.acquire(resource, holder_id)
                acquired.append(resource)

            member = await self.pipelines.start_port(pipeline_id, port_id)
        except Exception:
            await self.db.rollback()
            for resource in acquired:
                await self.locks.release(resource)
            if acquired:
                logger.info("Claim rolled back", pipeline_id=pipeline_id, port_id=port_id, released=acquired)
            raise

        logger.info(
            "Port claimed",
            pipeline_id=pipeline_id,
            port_id=port_id,
            holder=holder_id,
            resources=acquired,
        )
        return ClaimResponse(
            pipeline_id=pipeline_id,
            port_id=port_id,
            holder_id=holder_id,
            resources=acquired,
            status=member.status,
        )
