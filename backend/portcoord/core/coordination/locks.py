"""
Resource Lock Manager - Advisory cross-process resource locks.

Grants exclusive claims on named resources (a file, module, subsystem)
to worker sessions.
"""

from typing import Optional, Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.exceptions import LockConflictError, ValidationError
from portcoord.core.models import ResourceLock, utcnow

logger = structlog.get_logger(__name__)


class SessionProvider(Protocol):
    """Answers whether a lock holder's session is still alive."""

    async def is_active(self, holder_id: str) -> bool:
        ...


class ResourceLockManager:
    """
    Advisory lock table shared by independent worker processes.

    Guarantees:
    - At most one lock row per resource name
    - Acquire is a single conditional insert; it never waits or retries
    - Release is idempotent

    Holders live in separate processes, so exclusivity comes only from the
    unique key on ``resource_locks.resource``.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def acquire(self, resource: str, holder_id: str) -> ResourceLock:
        """
        Acquire a lock on a resource.

        Args:
            resource: Resource name (file path, module, subsystem)
            holder_id: Session identity claiming the resource

        Returns:
            The created lock

        Raises:
            ValidationError: If resource or holder is empty
            LockConflictError: If the resource is already locked; carries
                the current holder
        """
        resource = (resource or "").strip()
        holder_id = (holder_id or "").strip()
        if not resource:
            raise ValidationError("Resource name must not be empty")
        if not holder_id:
            raise ValidationError("Holder id must not be empty")

        acquired_at = utcnow()
        won = await self._insert_if_absent(resource, holder_id, acquired_at)

        if not won:
            holder = await self._holder_of(resource)
            await self.db.rollback()
            logger.info("Lock denied", resource=resource, requested_by=holder_id, holder=holder)
            raise LockConflictError(resource, holder)

        await self.db.commit()
        logger.info("Lock acquired", resource=resource, holder=holder_id)
        return ResourceLock(resource=resource, holder_id=holder_id, acquired_at=acquired_at)

    async def release(self, resource: str) -> bool:
        """
        Release a lock. Releasing an unlocked resource is not an error.

        Returns:
            True if a lock row was removed
        """
        result = await self.db.execute(
            delete(ResourceLock).where(ResourceLock.resource == resource)
        )
        await self.db.commit()

        released = (result.rowcount or 0) > 0
        if released:
            logger.info("Lock released", resource=resource)
        else:
            logger.debug("Release of unlocked resource", resource=resource)
        return released

    async def list_all(self) -> list[ResourceLock]:
        """All active locks, oldest first."""
        result = await self.db.execute(
            select(ResourceLock).order_by(ResourceLock.acquired_at, ResourceLock.resource)
        )
        return list(result.scalars().all())

    async def get(self, resource: str) -> Optional[ResourceLock]:
        result = await self.db.execute(
            select(ResourceLock).where(ResourceLock.resource == resource)
        )
        return result.scalar_one_or_none()

    async def is_locked(self, resource: str) -> tuple[bool, Optional[str]]:
        holder = await self._holder_of(resource)
        return holder is not None, holder

    async def clear(self) -> int:
        """Force-remove every lock. Returns the number removed."""
        result = await self.db.execute(delete(ResourceLock))
        await self.db.commit()

        count = result.rowcount or 0
        logger.warning("All locks cleared", count=count)
        return count

    async def release_held_by(self, holder_id: str) -> list[str]:
        """
        Release every lock held by a session, e.g. when it ends.

        Returns:
            Names of the released resources
        """
        result = await self.db.execute(
            select(ResourceLock.resource).where(ResourceLock.holder_id == holder_id)
        )
        resources = list(result.scalars().all())

        if resources:
            await self.db.execute(
                delete(ResourceLock)
                .where(ResourceLock.holder_id == holder_id)
                .where(ResourceLock.resource.in_(resources))
            )
            await self.db.commit()
            logger.info("Released locks for session", holder=holder_id, resources=resources)

        return resources

    async def sweep(self, provider: SessionProvider) -> list[str]:
        """
        Release the locks of every holder whose session has ended.

        Returns:
            Names of the released resources
        """
        released: list[str] = []
        holders = sorted({lock.holder_id for lock in await self.list_all()})

        for holder_id in holders:
            if await provider.is_active(holder_id):
                continue
            released.extend(await self.release_held_by(holder_id))

        if released:
            logger.info("Swept stale locks", count=len(released))
        return released

    async def _insert_if_absent(self, resource: str, holder_id: str, acquired_at) -> bool:
        """Single atomic conditional insert. Returns True if this call won."""
        dialect = self.db.get_bind().dialect.name
        values = {"resource": resource, "holder_id": holder_id, "acquired_at": acquired_at}

        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(ResourceLock).values(**values).on_conflict_do_nothing(
                index_elements=[ResourceLock.resource]
            )
            result = await self.db.execute(stmt)
            return (result.rowcount or 0) == 1

        # Other backends: let the primary key reject the duplicate
        try:
            async with self.db.begin_nested():
                self.db.add(ResourceLock(**values))
        except IntegrityError:
            return False
        return True

    async def _holder_of(self, resource: str) -> Optional[str]:
        result = await self.db.execute(
            select(ResourceLock.holder_id).where(ResourceLock.resource == resource)
        )
        return result.scalar_one_or_none()
