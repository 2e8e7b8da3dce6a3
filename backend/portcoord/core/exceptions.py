"""
Port Coordinator - Errors
=========================

Structured errors raised by the coordination services. Each carries enough
detail (holder, blocking list, retry count) for the caller to decide the
next step without re-querying. The API layer maps them to HTTP responses.
"""

from typing import Any, Optional


class CoordinationError(Exception):
    """Base class for all coordination errors."""

    code = "COORDINATION_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message, "code": self.code, "context": self.context}


class NotFoundError(CoordinationError):
    """Unknown pipeline, port, lock, loop or escalation."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} '{identifier}' not found", kind=kind, id=identifier)
        self.kind = kind
        self.identifier = identifier


class ValidationError(CoordinationError):
    """Rejected input: unknown status value, malformed edge, empty id."""

    code = "VALIDATION_ERROR"


class DependencyCycleError(ValidationError):
    """Adding the edge would close a dependency cycle."""

    code = "DEPENDENCY_CYCLE"

    def __init__(self, port_id: str, depends_on: str, cycle: list[str]):
        super().__init__(
            f"Dependency {port_id} -> {depends_on} would create a cycle: {' -> '.join(cycle)}",
            port_id=port_id,
            depends_on=depends_on,
            cycle=cycle,
        )
        self.cycle = cycle


class ConflictError(CoordinationError):
    """The request collides with existing state."""

    code = "CONFLICT"


class LockConflictError(ConflictError):
    """The resource is already locked by another holder."""

    code = "LOCK_HELD"

    def __init__(self, resource: str, holder_id: Optional[str]):
        super().__init__(
            f"Resource '{resource}' is locked by '{holder_id}'",
            resource=resource,
            holder_id=holder_id,
        )
        self.resource = resource
        self.holder_id = holder_id


class InvalidTransitionError(ConflictError):
    """A status change that would move backward or leave a terminal state."""

    code = "INVALID_TRANSITION"

    def __init__(self, kind: str, identifier: str, current: str, requested: str):
        super().__init__(
            f"{kind} '{identifier}' cannot move from '{current}' to '{requested}'",
            kind=kind,
            id=identifier,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class LoopClosedError(InvalidTransitionError):
    """A verification result arrived for a loop that already finished."""

    code = "LOOP_CLOSED"

    def __init__(self, loop_id: str, status: str):
        super().__init__("Feedback loop", loop_id, status, "running")
        self.loop_id = loop_id
        self.status = status


class DependencyBlockedError(ConflictError):
    """The port still has dependencies that are not complete."""

    code = "DEPENDENCY_BLOCKED"

    def __init__(self, pipeline_id: str, port_id: str, blocking: list[str]):
        super().__init__(
            f"Port '{port_id}' in pipeline '{pipeline_id}' is blocked by {', '.join(blocking)}",
            pipeline_id=pipeline_id,
            port_id=port_id,
            blocking=blocking,
        )
        self.blocking = blocking


class RetriesExhaustedError(CoordinationError):
    """A feedback loop hit max_retries and moved to ``escalated``.

    Never swallowed: the caller turns it into an escalation record.
    """

    code = "RETRIES_EXHAUSTED"

    def __init__(self, loop: Any, result: Any):
        super().__init__(
            f"Feedback loop '{loop.id}' exhausted {loop.current_retry}/{loop.max_retries} retries",
            loop_id=loop.id,
            current_retry=loop.current_retry,
            max_retries=loop.max_retries,
            failed_checks=[c.name for c in result.failed_checks],
        )
        self.loop = loop
        self.result = result
