"""
Port Coordinator - Coordination Engine
======================================

Components:
- DependencyResolver: Which ports may start now
- ResourceLockManager: Exclusive, cross-process resource claims
- EscalationTriggerEngine: Declarative escalation rules
- FeedbackLoopController: Bounded implement/verify cycles

Supporting services:
- PipelineService: Plans, memberships, dependency edges
- EscalationService: Persisted escalation log
- DirectMessageStore: Verifier -> implementer message relay
- PortDispatcher: Dependency check + resource claim in one call
"""

from portcoord.core.coordination.dispatch import PortDispatcher
from portcoord.core.coordination.escalation import EscalationService
from portcoord.core.coordination.feedback import FeedbackLoopController
from portcoord.core.coordination.locks import ResourceLockManager, SessionProvider
from portcoord.core.coordination.messages import DirectMessageStore, MessageRelay
from portcoord.core.coordination.pipelines import PipelineService
from portcoord.core.coordination.resolver import DependencyGraph, DependencyResolver
from portcoord.core.coordination.triggers import (
    EscalationTrigger,
    EscalationTriggerEngine,
    default_triggers,
)

__all__ = [
    "DependencyGraph",
    "DependencyResolver",
    "DirectMessageStore",
    "EscalationService",
    "EscalationTrigger",
    "EscalationTriggerEngine",
    "FeedbackLoopController",
    "MessageRelay",
    "PipelineService",
    "PortDispatcher",
    "ResourceLockManager",
    "SessionProvider",
    "default_triggers",
]
