"""
Pipelines API Routes.

Execution plans, their ports, dependency edges and run eligibility.
"""

from typing import Optional

from fastapi import APIRouter, Query, status

from portcoord.api.deps import Dispatcher, Pipelines, Resolver
from portcoord.core.models import PipelineStatus
from portcoord.core.schemas import (
    ClaimRequest,
    ClaimResponse,
    DependencyCreate,
    ExecutionPlan,
    GraphStats,
    PipelineCreate,
    PipelineDetailResponse,
    PipelinePortResponse,
    PipelineResponse,
    PortAdd,
    Progress,
    RunEligibility,
    StatusUpdate,
)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])
dependencies_router = APIRouter(prefix="/dependencies", tags=["dependencies"])


# ==========================================================================
# Plans
# ==========================================================================

@router.post("", response_model=PipelineResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline(data: PipelineCreate, pipelines: Pipelines):
    """Create an execution plan."""
    return await pipelines.create(data.id, data.name, data.session_id)


@router.get("", response_model=list[PipelineResponse])
async def list_pipelines(
    pipelines: Pipelines,
    status_filter: Optional[PipelineStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
):
    return await pipelines.list_pipelines(status=status_filter, limit=limit)


@router.get("/{pipeline_id}", response_model=PipelineDetailResponse)
async def get_pipeline(pipeline_id: str, pipelines: Pipelines):
    """Plan with its ports in wave order."""
    pipeline = await pipelines.get(pipeline_id)
    ports = await pipelines.ports(pipeline_id)

    detail = PipelineDetailResponse.model_validate(pipeline)
    detail.ports = [PipelinePortResponse.model_validate(p) for p in ports]
    return detail


@router.delete("/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pipeline(pipeline_id: str, pipelines: Pipelines):
    await pipelines.delete(pipeline_id)


@router.put("/{pipeline_id}/status", response_model=PipelineResponse)
async def update_pipeline_status(pipeline_id: str, data: StatusUpdate, pipelines: Pipelines):
    return await pipelines.update_status(pipeline_id, data.status)


# ==========================================================================
# Ports
# ==========================================================================

@router.post(
    "/{pipeline_id}/ports",
    response_model=PipelinePortResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_port(pipeline_id: str, data: PortAdd, pipelines: Pipelines):
    """Add a port as pending, together with its dependency edges."""
    return await pipelines.add_port(pipeline_id, data.port_id, data.group_order, data.depends_on)


@router.delete("/{pipeline_id}/ports/{port_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_port(pipeline_id: str, port_id: str, pipelines: Pipelines):
    await pipelines.remove_port(pipeline_id, port_id)


@router.put("/{pipeline_id}/ports/{port_id}/status", response_model=PipelinePortResponse)
async def update_port_status(pipeline_id: str, port_id: str, data: StatusUpdate, pipelines: Pipelines):
    """Report a port's progress. Status only moves forward."""
    return await pipelines.update_port_status(pipeline_id, port_id, data.status)


@router.get("/{pipeline_id}/ports/{port_id}/can-run", response_model=RunEligibility)
async def can_run(pipeline_id: str, port_id: str, resolver: Resolver):
    return await resolver.can_run(pipeline_id, port_id)


@router.post("/{pipeline_id}/ports/{port_id}/claim", response_model=ClaimResponse)
async def claim_port(pipeline_id: str, port_id: str, data: ClaimRequest, dispatcher: Dispatcher):
    """
    Claim a port: dependencies must be complete and every resource free.

    Answers 409 with the blocking dependencies or the current lock holder.
    """
    return await dispatcher.claim_port(pipeline_id, port_id, data.holder_id, data.resources)


# ==========================================================================
# Views
# ==========================================================================

@router.get("/{pipeline_id}/progress", response_model=Progress)
async def get_progress(pipeline_id: str, pipelines: Pipelines):
    return await pipelines.progress(pipeline_id)


@router.get("/{pipeline_id}/next", response_model=list[str])
async def next_runnable(pipeline_id: str, resolver: Resolver):
    """Pending ports whose dependencies are all complete."""
    return await resolver.next_runnable(pipeline_id)


@router.get("/{pipeline_id}/plan", response_model=ExecutionPlan)
async def execution_plan(pipeline_id: str, resolver: Resolver):
    return await resolver.execution_plan(pipeline_id)


@router.get("/{pipeline_id}/graph", response_model=GraphStats)
async def graph_stats(pipeline_id: str, resolver: Resolver):
    return await resolver.stats(pipeline_id)


# ==========================================================================
# Dependency edges
# ==========================================================================

@dependencies_router.post("", status_code=status.HTTP_201_CREATED)
async def add_dependency(data: DependencyCreate, pipelines: Pipelines) -> dict:
    edge = await pipelines.add_dependency(data.port_id, data.depends_on)
    return {"port_id": edge.port_id, "depends_on": edge.depends_on}


@dependencies_router.delete("")
async def remove_dependency(
    pipelines: Pipelines,
    port_id: str = Query(...),
    depends_on: str = Query(...),
) -> dict:
    removed = await pipelines.remove_dependency(port_id, depends_on)
    return {"port_id": port_id, "depends_on": depends_on, "removed": removed}


@dependencies_router.get("/{port_id}", response_model=list[str])
async def list_dependencies(port_id: str, pipelines: Pipelines):
    return await pipelines.dependencies(port_id)
