"""
Escalations API Routes.

Escalation log plus on-demand trigger evaluation of a worker snapshot.
"""

from typing import Optional

from fastapi import APIRouter, Query, status

from portcoord.api.deps import Escalations
from portcoord.core.coordination import EscalationTriggerEngine
from portcoord.core.models import EscalationStatus, EscalationType, Severity
from portcoord.core.schemas import (
    EscalationCreate,
    EscalationResolve,
    EscalationResponse,
    EscalationStats,
    EvaluateRequest,
    EvaluateResponse,
)

router = APIRouter(prefix="/escalations", tags=["escalations"])


@router.post("", response_model=EscalationResponse, status_code=status.HTTP_201_CREATED)
async def create_escalation(data: EscalationCreate, escalations: Escalations):
    """Raise an escalation by hand."""
    return await escalations.create(**data.model_dump())


@router.get("", response_model=list[EscalationResponse])
async def list_escalations(
    escalations: Escalations,
    status_filter: Optional[EscalationStatus] = Query(None, alias="status"),
    type_filter: Optional[EscalationType] = Query(None, alias="type"),
    session_id: Optional[str] = Query(None),
    min_severity: Optional[Severity] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    """
    List escalations, newest first.

    ``session_id`` and ``min_severity`` switch to the per-session and
    open-by-severity views.
    """
    if session_id:
        return await escalations.list_by_session(session_id)
    if min_severity is not None:
        return await escalations.list_by_severity(min_severity)
    return await escalations.list_escalations(status=status_filter, type=type_filter, limit=limit)


@router.get("/stats", response_model=EscalationStats)
async def escalation_stats(escalations: Escalations):
    return await escalations.stats()


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate(data: EvaluateRequest, escalations: Escalations):
    """
    Run the trigger rules against a worker snapshot. With ``persist`` the
    fired drafts are stored as escalation records.
    """
    engine = EscalationTriggerEngine()
    drafts = engine.check_triggers(data.context)

    records = []
    if data.persist:
        records = [await escalations.record(draft) for draft in drafts]

    return EvaluateResponse(
        severity=engine.evaluate_severity(data.context),
        fired=drafts,
        escalations=[EscalationResponse.model_validate(r) for r in records],
    )


@router.get("/{escalation_id}", response_model=EscalationResponse)
async def get_escalation(escalation_id: str, escalations: Escalations):
    return await escalations.get(escalation_id)


@router.post("/{escalation_id}/resolve", response_model=EscalationResponse)
async def resolve_escalation(escalation_id: str, data: EscalationResolve, escalations: Escalations):
    return await escalations.resolve(escalation_id, data.resolution)


@router.post("/{escalation_id}/dismiss", response_model=EscalationResponse)
async def dismiss_escalation(escalation_id: str, escalations: Escalations, data: Optional[EscalationResolve] = None):
    return await escalations.dismiss(escalation_id, data.resolution if data else None)
