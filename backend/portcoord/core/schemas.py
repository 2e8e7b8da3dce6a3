"""
Port Coordinator - Pydantic Schemas
===================================

Value objects passed in and out of the coordination services, plus the
request/response contract of the REST API.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from portcoord.core.models import (
    EscalationStatus,
    EscalationType,
    FeedbackLoopStatus,
    MessageType,
    PipelineStatus,
    PortStatus,
    Severity,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorResponse(BaseSchema):
    """Error body returned for every coordination error."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str


# ==========================================================================
# Pipelines
# ==========================================================================

class PipelineCreate(BaseSchema):
    """Create an execution plan."""

    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    session_id: Optional[str] = None


class PipelineResponse(BaseSchema):
    id: str
    name: str
    session_id: Optional[str]
    status: PipelineStatus
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


class PipelinePortResponse(BaseSchema):
    pipeline_id: str
    port_id: str
    group_order: int
    status: PortStatus


class PipelineDetailResponse(PipelineResponse):
    ports: list[PipelinePortResponse] = Field(default_factory=list)


class PortAdd(BaseSchema):
    """Add a port to a pipeline, with its dependency edges."""

    port_id: str = Field(min_length=1, max_length=100)
    group_order: int = Field(0, ge=0)
    depends_on: list[str] = Field(default_factory=list)


class StatusUpdate(BaseSchema):
    """Status change request. The value is validated by the service."""

    status: str


class DependencyCreate(BaseSchema):
    port_id: str
    depends_on: str


class RunEligibility(BaseSchema):
    """Answer to "can this port start now?"."""

    pipeline_id: str
    port_id: str
    eligible: bool
    blocking: list[str] = Field(default_factory=list)


class Progress(BaseSchema):
    pipeline_id: str
    completed: int
    total: int

    @computed_field  # type: ignore[misc]
    @property
    def percent(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 1)


class PortExecution(BaseSchema):
    port_id: str
    dependencies: list[str]
    status: PortStatus


class ExecutionGroup(BaseSchema):
    order: int
    ports: list[PortExecution]


class ExecutionPlan(BaseSchema):
    """Ports grouped into waves by group_order."""

    pipeline_id: str
    groups: list[ExecutionGroup]
    total_ports: int


class GraphStats(BaseSchema):
    total_ports: int
    pending_ports: int
    running_ports: int
    complete_ports: int
    failed_ports: int
    levels: int
    max_parallelism: int
    critical_path: list[str]


class ClaimRequest(BaseSchema):
    holder_id: str = Field(min_length=1, max_length=100)
    resources: list[str] = Field(default_factory=list)


class ClaimResponse(BaseSchema):
    pipeline_id: str
    port_id: str
    holder_id: str
    resources: list[str]
    status: PortStatus


# ==========================================================================
# Locks
# ==========================================================================

class LockAcquire(BaseSchema):
    resource: str = Field(min_length=1, max_length=500)
    holder_id: str = Field(min_length=1, max_length=100)


class LockResponse(BaseSchema):
    resource: str
    holder_id: str
    acquired_at: datetime


# ==========================================================================
# Escalation Triggers
# ==========================================================================

class WorkerContext(BaseSchema):
    """
    Execution-context snapshot of one worker.

    Elapsed time is measured by the caller; the trigger engine never reads
    a clock.
    """

    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    port_id: Optional[str] = None
    retries: int = Field(0, ge=0)
    max_retries: int = 0
    tokens_used: int = Field(0, ge=0)
    token_budget: int = Field(0, ge=0)
    elapsed: Optional[timedelta] = None
    timeout: Optional[timedelta] = None
    tests_passed: int = Field(0, ge=0)
    tests_failed: int = Field(0, ge=0)
    build_failed: bool = False
    is_blocked: bool = False
    block_reason: Optional[str] = None

    @property
    def budget_usage(self) -> Optional[float]:
        if self.token_budget <= 0:
            return None
        return self.tokens_used / self.token_budget

    def snapshot(self) -> dict[str, Any]:
        return {
            "tokens_used": self.tokens_used,
            "token_budget": self.token_budget,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "elapsed_seconds": self.elapsed.total_seconds() if self.elapsed is not None else None,
            "timeout_seconds": self.timeout.total_seconds() if self.timeout is not None else None,
        }


class EscalationDraft(BaseSchema):
    """An escalation produced by a fired trigger, not yet persisted."""

    type: EscalationType
    severity: Severity
    issue: str
    suggestion: Optional[str] = None
    from_session: Optional[str] = None
    from_port: Optional[str] = None
    auto_resolve: bool = False
    context: dict[str, Any] = Field(default_factory=dict)


class EvaluateRequest(BaseSchema):
    context: WorkerContext
    persist: bool = False


# ==========================================================================
# Escalations
# ==========================================================================

class EscalationCreate(BaseSchema):
    type: EscalationType = EscalationType.MANUAL_REVIEW
    severity: Severity = Severity.MEDIUM
    issue: str = Field(min_length=1)
    suggestion: Optional[str] = None
    from_session: Optional[str] = None
    to_session: Optional[str] = None
    from_port: Optional[str] = None
    context: Optional[dict[str, Any]] = None


class EscalationResolve(BaseSchema):
    resolution: Optional[str] = None


class EscalationResponse(BaseSchema):
    id: str
    from_session: Optional[str]
    to_session: Optional[str]
    from_port: Optional[str]
    type: EscalationType
    severity: Severity
    issue: str
    suggestion: Optional[str]
    context: Optional[dict[str, Any]]
    status: EscalationStatus
    resolution: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]


class EvaluateResponse(BaseSchema):
    severity: Severity
    fired: list[EscalationDraft]
    escalations: list[EscalationResponse] = Field(default_factory=list)


class EscalationStats(BaseSchema):
    total: int = 0
    open: int = 0
    resolved: int = 0
    dismissed: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)


# ==========================================================================
# Feedback Loops
# ==========================================================================

class FailedCheck(BaseSchema):
    """One failing verification check (a test, lint rule, build step)."""

    name: str
    expected: Optional[str] = None
    actual: Optional[str] = None
    stack_trace: Optional[str] = None
    suggested_fix: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None


class VerificationResult(BaseSchema):
    """What the verifier reports after checking one implementation attempt."""

    success: bool
    total_checks: int = Field(0, ge=0)
    passed_checks: int = Field(0, ge=0)
    coverage: Optional[float] = Field(None, ge=0, le=100)
    failed_checks: list[FailedCheck] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _passed_within_total(self) -> "VerificationResult":
        if self.passed_checks > self.total_checks:
            raise ValueError("passed_checks cannot exceed total_checks")
        return self

    @property
    def failed_count(self) -> int:
        return self.total_checks - self.passed_checks


class FeedbackResult(BaseSchema):
    """Record of one processed verification iteration."""

    loop_id: str
    iteration: int
    success: bool
    checks_passed: int
    checks_failed: int
    coverage: Optional[float] = None
    failed_checks: list[FailedCheck] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    status: FeedbackLoopStatus
    current_retry: int
    max_retries: int
    escalations: list[EscalationDraft] = Field(default_factory=list)


class FeedbackLoopCreate(BaseSchema):
    channel_id: str = Field(min_length=1, max_length=100)
    implementer_id: str = Field(min_length=1, max_length=100)
    verifier_id: str = Field(min_length=1, max_length=100)
    port_id: Optional[str] = None
    max_retries: Optional[int] = None


class FeedbackLoopResponse(BaseSchema):
    id: str
    channel_id: str
    implementer_id: str
    verifier_id: str
    port_id: Optional[str]
    max_retries: int
    current_retry: int
    status: FeedbackLoopStatus
    last_feedback_at: Optional[datetime]
    created_at: datetime
    completed_at: Optional[datetime]


class VerificationSubmit(BaseSchema):
    result: VerificationResult
    context: Optional[WorkerContext] = None


class VerificationOutcome(BaseSchema):
    """API response for a processed verification result."""

    result: FeedbackResult
    escalated: bool = False
    escalation_id: Optional[str] = None


class FeedbackStats(BaseSchema):
    total_loops: int = 0
    success_loops: int = 0
    failed_loops: int = 0
    escalated_loops: int = 0
    running_loops: int = 0
    avg_retries: float = 0.0
    success_rate: float = 0.0


# ==========================================================================
# Direct Messages
# ==========================================================================

class DirectMessageResponse(BaseSchema):
    id: str
    channel_id: str
    from_session: str
    to_session: str
    type: MessageType
    payload: dict[str, Any]
    created_at: datetime
    delivered_at: Optional[datetime]
    processed_at: Optional[datetime]
