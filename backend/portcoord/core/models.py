"""
Port Coordinator - Database Models
==================================

SQLAlchemy models for the coordination store.

Every table here is shared by independent worker processes. Uniqueness
constraints are part of the contract: ``resource_locks.resource`` is the
key that makes lock acquisition a single atomic insert.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import Mapped, mapped_column

from portcoord.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC.

    SQLite drops tzinfo on the way in, so naive values read back are
    tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    """Persist enum values (lowercase strings) rather than member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
        validate_strings=True,
    )


# ==========================================================================
# Enums
# ==========================================================================

class PortStatus(str, enum.Enum):
    """Plan-scoped status of a work unit (port)."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        if self is PortStatus.PENDING:
            return 0
        if self is PortStatus.RUNNING:
            return 1
        return 2

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


class PipelineStatus(str, enum.Enum):
    """Execution plan status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETE, PipelineStatus.FAILED, PipelineStatus.CANCELLED)


class FeedbackLoopStatus(str, enum.Enum):
    """Implement/verify loop status. Everything but RUNNING is terminal."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ESCALATED = "escalated"


class EscalationStatus(str, enum.Enum):
    """Escalation record lifecycle."""
    OPEN = "open"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class EscalationType(str, enum.Enum):
    """Kinds of escalation raised by triggers or operators."""
    VERIFICATION_FAILED = "verification_failed"
    BUDGET_EXCEEDED = "budget_exceeded"
    BUDGET_WARNING = "budget_warning"
    TIMEOUT = "timeout"
    BUILD_FAILED = "build_failed"
    BLOCKED = "blocked"
    QUESTION = "question"
    DEPENDENCY_LOOP = "dependency_loop"
    MANUAL_REVIEW = "manual_review"


class Severity(str, enum.Enum):
    """Escalation severity, totally ordered low < medium < high < critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class MessageType(str, enum.Enum):
    """Direct message kinds exchanged between paired workers."""
    RESULT = "result"      # implementer -> verifier
    FEEDBACK = "feedback"  # verifier -> implementer
    QUERY = "query"
    ACK = "ack"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Execution Plans
# ==========================================================================

class Pipeline(Base, TimestampMixin):
    """
    Execution plan grouping ports into ordered waves.

    Plan status is independent of the status of its member ports.
    """

    __tablename__ = "pipelines"

    id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )  # Caller-supplied
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    session_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )  # Owning session, if any
    status: Mapped[PipelineStatus] = mapped_column(
        _enum_column(PipelineStatus),
        default=PipelineStatus.PENDING,
        nullable=False,
        index=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Pipeline {self.id} [{self.status.value}]>"


class PipelinePort(Base, TimestampMixin):
    """
    Membership of a port in a pipeline.

    ``status`` is plan-scoped: the same port id can be tracked separately
    by several pipelines.
    """

    __tablename__ = "pipeline_ports"

    pipeline_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("pipelines.id", ondelete="CASCADE"),
        primary_key=True,
    )
    port_id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        index=True,
    )
    group_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # Execution wave
    status: Mapped[PortStatus] = mapped_column(
        _enum_column(PortStatus),
        default=PortStatus.PENDING,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PipelinePort {self.pipeline_id}/{self.port_id} g{self.group_order} [{self.status.value}]>"


class PortDependency(Base):
    """
    Global dependency edge: ``port_id`` runs only after ``depends_on``.

    Edges are not scoped to a pipeline.
    """

    __tablename__ = "port_dependencies"

    port_id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )
    depends_on: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PortDependency {self.port_id} -> {self.depends_on}>"


# ==========================================================================
# Resource Locks
# ==========================================================================

class ResourceLock(Base):
    """
    Advisory, process-spanning exclusive claim on a named resource.

    The primary key on ``resource`` guarantees at most one row per name.
    """

    __tablename__ = "resource_locks"

    resource: Mapped[str] = mapped_column(
        String(500),
        primary_key=True,
    )
    holder_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    acquired_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ResourceLock {self.resource} held by {self.holder_id}>"


# ==========================================================================
# Feedback Loops
# ==========================================================================

class FeedbackLoop(Base):
    """
    Bounded implement -> verify -> fix cycle between two worker identities.
    """

    __tablename__ = "feedback_loops"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id,
    )
    channel_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    implementer_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    verifier_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    port_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )
    current_retry: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    status: Mapped[FeedbackLoopStatus] = mapped_column(
        _enum_column(FeedbackLoopStatus),
        default=FeedbackLoopStatus.RUNNING,
        nullable=False,
        index=True,
    )
    last_feedback_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != FeedbackLoopStatus.RUNNING

    def __repr__(self) -> str:
        return f"<FeedbackLoop {self.id} {self.current_retry}/{self.max_retries} [{self.status.value}]>"


# ==========================================================================
# Escalations
# ==========================================================================

class Escalation(Base):
    """
    Human-actionable record raised by a trigger or an operator.

    Records are resolved or dismissed, never reopened.
    """

    __tablename__ = "escalations"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id,
    )
    from_session: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    to_session: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    from_port: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    type: Mapped[EscalationType] = mapped_column(
        _enum_column(EscalationType),
        nullable=False,
        index=True,
    )
    severity: Mapped[Severity] = mapped_column(
        _enum_column(Severity),
        nullable=False,
    )
    issue: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    suggestion: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    context: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )  # Snapshot the trigger fired on
    status: Mapped[EscalationStatus] = mapped_column(
        _enum_column(EscalationStatus),
        default=EscalationStatus.OPEN,
        nullable=False,
        index=True,
    )
    resolution: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Escalation {self.id} {self.type.value}/{self.severity.value} [{self.status.value}]>"


# ==========================================================================
# Direct Messages
# ==========================================================================

class DirectMessage(Base):
    """Message relayed between the two workers of a channel."""

    __tablename__ = "direct_messages"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id,
    )
    channel_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    from_session: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    to_session: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    type: Mapped[MessageType] = mapped_column(
        _enum_column(MessageType),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<DirectMessage {self.type.value} {self.from_session} -> {self.to_session}>"
