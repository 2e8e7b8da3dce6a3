"""
Port Coordinator - API Dependencies
===================================

Shared dependencies for FastAPI endpoints. Every service is built on the
request's database session.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.coordination import (
    DependencyResolver,
    EscalationService,
    FeedbackLoopController,
    PipelineService,
    PortDispatcher,
    ResourceLockManager,
)
from portcoord.core.database import get_db


def get_pipeline_service(db: Annotated[AsyncSession, Depends(get_db)]) -> PipelineService:
    return PipelineService(db)


def get_resolver(db: Annotated[AsyncSession, Depends(get_db)]) -> DependencyResolver:
    return DependencyResolver(db)


def get_dispatcher(db: Annotated[AsyncSession, Depends(get_db)]) -> PortDispatcher:
    return PortDispatcher(db)


def get_lock_manager(db: Annotated[AsyncSession, Depends(get_db)]) -> ResourceLockManager:
    return ResourceLockManager(db)


def get_escalation_service(db: Annotated[AsyncSession, Depends(get_db)]) -> EscalationService:
    return EscalationService(db)


def get_feedback_controller(db: Annotated[AsyncSession, Depends(get_db)]) -> FeedbackLoopController:
    return FeedbackLoopController(db)


# ==========================================================================
# Type Aliases
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Pipelines = Annotated[PipelineService, Depends(get_pipeline_service)]
Resolver = Annotated[DependencyResolver, Depends(get_resolver)]
Dispatcher = Annotated[PortDispatcher, Depends(get_dispatcher)]
Locks = Annotated[ResourceLockManager, Depends(get_lock_manager)]
Escalations = Annotated[EscalationService, Depends(get_escalation_service)]
FeedbackLoops = Annotated[FeedbackLoopController, Depends(get_feedback_controller)]
