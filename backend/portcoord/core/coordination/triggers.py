"""
Escalation Trigger Engine - Declarative escalation rules.

Maps a worker's execution-context snapshot to the escalations it warrants.
Evaluation has no side effects; persisting what fired is the job of the
EscalationService.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from portcoord.core.models import EscalationType, Severity
from portcoord.core.schemas import EscalationDraft, WorkerContext

logger = structlog.get_logger(__name__)

# Budget thresholds (fraction of token budget)
BUDGET_EXHAUSTED_RATIO = 0.95
BUDGET_WARNING_RATIO = 0.80

DEFAULT_ISSUE = "Automatically detected problem"


@dataclass(frozen=True)
class EscalationTrigger:
    """
    One rule: a predicate over a WorkerContext plus the text builders for
    the escalation it raises.
    """
    type: EscalationType
    severity: Severity
    condition: Callable[[WorkerContext], bool]
    build_issue: Optional[Callable[[WorkerContext], str]] = None
    build_suggestion: Optional[Callable[[WorkerContext], str]] = None
    auto_resolve: bool = False
    name: str = ""

    def fires(self, ctx: WorkerContext) -> bool:
        return bool(self.condition(ctx))

    def draft(self, ctx: WorkerContext) -> EscalationDraft:
        issue = self.build_issue(ctx) if self.build_issue else DEFAULT_ISSUE
        suggestion = self.build_suggestion(ctx) if self.build_suggestion else None
        context = ctx.snapshot()
        context["trigger"] = self.name or self.type.value
        context["auto_resolved"] = self.auto_resolve
        return EscalationDraft(
            type=self.type,
            severity=self.severity,
            issue=issue,
            suggestion=suggestion,
            from_session=ctx.session_id,
            from_port=ctx.port_id,
            auto_resolve=self.auto_resolve,
            context=context,
        )


# ==========================================================================
# Default Conditions
# ==========================================================================

def _retries_exhausted(ctx: WorkerContext) -> bool:
    if ctx.max_retries <= 0:
        return False
    return ctx.retries >= ctx.max_retries


def _budget_exhausted(ctx: WorkerContext) -> bool:
    usage = ctx.budget_usage
    return usage is not None and usage >= BUDGET_EXHAUSTED_RATIO


def _budget_warning(ctx: WorkerContext) -> bool:
    usage = ctx.budget_usage
    return usage is not None and BUDGET_WARNING_RATIO <= usage < BUDGET_EXHAUSTED_RATIO


def _timed_out(ctx: WorkerContext) -> bool:
    if not ctx.timeout or ctx.elapsed is None:
        return False
    return ctx.elapsed > ctx.timeout


def _blocked_issue(ctx: WorkerContext) -> str:
    if ctx.block_reason:
        return f"Work is blocked: {ctx.block_reason}"
    return "Work is blocked"


def default_triggers() -> list[EscalationTrigger]:
    """Built-in rule set. Thresholds here are part of the public contract."""
    return [
        EscalationTrigger(
            name="verification_failure",
            type=EscalationType.VERIFICATION_FAILED,
            severity=Severity.HIGH,
            condition=_retries_exhausted,
            build_issue=lambda ctx: (
                f"Verification kept failing: {ctx.retries}/{ctx.max_retries} retries used"
            ),
            build_suggestion=lambda ctx: "Review the failing checks and find the root cause",
        ),
        EscalationTrigger(
            name="budget_exhausted",
            type=EscalationType.BUDGET_EXCEEDED,
            severity=Severity.MEDIUM,
            condition=_budget_exhausted,
            build_issue=lambda ctx: (
                f"Token budget at {ctx.budget_usage:.0%} ({ctx.tokens_used}/{ctx.token_budget})"
            ),
            build_suggestion=lambda ctx: "Compact the context or raise the token budget",
        ),
        EscalationTrigger(
            name="budget_warning",
            type=EscalationType.BUDGET_WARNING,
            severity=Severity.LOW,
            condition=_budget_warning,
            auto_resolve=True,
            build_issue=lambda ctx: f"Token usage above 80% ({ctx.budget_usage:.0%}), compaction recommended",
            build_suggestion=lambda ctx: "Compaction will be needed soon",
        ),
        EscalationTrigger(
            name="timeout",
            type=EscalationType.TIMEOUT,
            severity=Severity.HIGH,
            condition=_timed_out,
            build_issue=lambda ctx: (
                f"Work exceeded its timeout ({ctx.elapsed} > {ctx.timeout})"
            ),
            build_suggestion=lambda ctx: "Reduce the scope or split the work into smaller ports",
        ),
        EscalationTrigger(
            name="build_failure",
            type=EscalationType.BUILD_FAILED,
            severity=Severity.HIGH,
            condition=lambda ctx: ctx.build_failed,
            build_issue=lambda ctx: "Build failed",
            build_suggestion=lambda ctx: "Fix the compilation errors",
        ),
        EscalationTrigger(
            name="blocked",
            type=EscalationType.BLOCKED,
            severity=Severity.MEDIUM,
            condition=lambda ctx: ctx.is_blocked,
            build_issue=_blocked_issue,
            build_suggestion=lambda ctx: "Resolve the blocking dependency",
        ),
    ]


# ==========================================================================
# Engine
# ==========================================================================

class EscalationTriggerEngine:
    """
    Evaluates the trigger table against one context snapshot.

    The table starts with the defaults and grows through ``add_trigger``;
    nothing here assumes a fixed rule list.
    """

    def __init__(self, triggers: Optional[list[EscalationTrigger]] = None):
        self._triggers: list[EscalationTrigger] = (
            list(triggers) if triggers is not None else default_triggers()
        )

    @property
    def triggers(self) -> list[EscalationTrigger]:
        return list(self._triggers)

    def add_trigger(self, trigger: EscalationTrigger) -> None:
        """Register an additional rule at runtime."""
        self._triggers.append(trigger)
        logger.debug("Trigger registered", trigger=trigger.name or trigger.type.value)

    def fired(self, ctx: WorkerContext) -> list[EscalationTrigger]:
        return [t for t in self._triggers if t.fires(ctx)]

    def check_triggers(self, ctx: WorkerContext) -> list[EscalationDraft]:
        """
        Evaluate every rule.

        Returns:
            One draft per satisfied rule, in table order. Several rules may
            fire on the same snapshot.
        """
        drafts = [t.draft(ctx) for t in self.fired(ctx)]
        if drafts:
            logger.info(
                "Escalation triggers fired",
                session_id=ctx.session_id,
                port_id=ctx.port_id,
                types=[d.type.value for d in drafts],
            )
        return drafts

    def check_single(self, trigger_type: EscalationType, ctx: WorkerContext) -> Optional[EscalationTrigger]:
        for trigger in self._triggers:
            if trigger.type == trigger_type and trigger.fires(ctx):
                return trigger
        return None

    def evaluate_severity(self, ctx: WorkerContext) -> Severity:
        """Highest severity among fired rules; LOW when nothing fired."""
        return max((t.severity for t in self.fired(ctx)), default=Severity.LOW)

    def has_critical(self, ctx: WorkerContext) -> bool:
        return any(t.severity == Severity.CRITICAL and t.fires(ctx) for t in self._triggers)

    def active_count(self, ctx: WorkerContext) -> int:
        return len(self.fired(ctx))
