"""
Locks API Routes.

Acquire, inspect and release advisory resource locks. Resource names may
be file paths, so they are matched as a path.
"""

from fastapi import APIRouter, status

from portcoord.api.deps import Locks
from portcoord.core.exceptions import NotFoundError
from portcoord.core.schemas import LockAcquire, LockResponse

router = APIRouter(prefix="/locks", tags=["locks"])


@router.post("", response_model=LockResponse, status_code=status.HTTP_201_CREATED)
async def acquire_lock(data: LockAcquire, locks: Locks):
    """
    Acquire a lock. Never waits: a held resource answers 409 with the
    current holder.
    """
    return await locks.acquire(data.resource, data.holder_id)


@router.get("", response_model=list[LockResponse])
async def list_locks(locks: Locks):
    return await locks.list_all()


@router.delete("")
async def clear_locks(locks: Locks) -> dict:
    """Force-release every lock."""
    return {"cleared": await locks.clear()}


@router.delete("/sessions/{holder_id}")
async def release_session_locks(holder_id: str, locks: Locks) -> dict:
    """Release every lock held by an ended session."""
    released = await locks.release_held_by(holder_id)
    return {"holder_id": holder_id, "released": released}


@router.get("/{resource:path}", response_model=LockResponse)
async def get_lock(resource: str, locks: Locks):
    lock = await locks.get(resource)
    if lock is None:
        raise NotFoundError("Lock", resource)
    return lock


@router.delete("/{resource:path}")
async def release_lock(resource: str, locks: Locks) -> dict:
    """Release a lock. Unknown resources are not an error."""
    return {"resource": resource, "released": await locks.release(resource)}
