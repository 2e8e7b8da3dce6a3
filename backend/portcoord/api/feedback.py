"""
Feedback Loops API Routes.

Implement/verify loops between paired workers. A verification result that
spends the last retry is answered with the escalation it produced.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, status

from portcoord.api.deps import Escalations, FeedbackLoops
from portcoord.core.exceptions import RetriesExhaustedError
from portcoord.core.schemas import (
    FeedbackLoopCreate,
    FeedbackLoopResponse,
    FeedbackStats,
    VerificationOutcome,
    VerificationSubmit,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/feedback-loops", tags=["feedback-loops"])


@router.post("", response_model=FeedbackLoopResponse, status_code=status.HTTP_201_CREATED)
async def create_loop(data: FeedbackLoopCreate, loops: FeedbackLoops):
    return await loops.create(
        channel_id=data.channel_id,
        implementer_id=data.implementer_id,
        verifier_id=data.verifier_id,
        port_id=data.port_id,
        max_retries=data.max_retries,
    )


@router.get("", response_model=list[FeedbackLoopResponse])
async def list_active_loops(loops: FeedbackLoops, limit: Optional[int] = Query(None, ge=1, le=500)):
    """Running loops, newest first."""
    return await loops.list_active(limit)


@router.get("/stats", response_model=FeedbackStats)
async def loop_stats(loops: FeedbackLoops):
    return await loops.stats()


@router.get("/channel/{channel_id}", response_model=FeedbackLoopResponse)
async def get_loop_by_channel(channel_id: str, loops: FeedbackLoops):
    return await loops.get_by_channel(channel_id)


@router.get("/port/{port_id}", response_model=FeedbackLoopResponse)
async def get_active_loop_for_port(port_id: str, loops: FeedbackLoops):
    return await loops.get_active_for_port(port_id)


@router.get("/{loop_id}", response_model=FeedbackLoopResponse)
async def get_loop(loop_id: str, loops: FeedbackLoops):
    return await loops.get(loop_id)


@router.post("/{loop_id}/results", response_model=VerificationOutcome)
async def submit_result(
    loop_id: str,
    data: VerificationSubmit,
    loops: FeedbackLoops,
    escalations: Escalations,
):
    """
    Apply a verification result.

    When this result exhausts the loop, an escalation record is created and
    returned with ``escalated: true``.
    """
    try:
        result = await loops.process_verification_result(loop_id, data.result, data.context)
    except RetriesExhaustedError as exc:
        escalation = await escalations.raise_exhausted(exc)
        logger.warning("Feedback loop escalated", loop_id=loop_id, escalation_id=escalation.id)
        return VerificationOutcome(result=exc.result, escalated=True, escalation_id=escalation.id)

    return VerificationOutcome(result=result)


@router.post("/{loop_id}/fail", response_model=FeedbackLoopResponse)
async def fail_loop(loop_id: str, loops: FeedbackLoops):
    """Cancel a running loop. Workers are not interrupted."""
    return await loops.mark_failed(loop_id)
