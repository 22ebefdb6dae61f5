"""
Pure domain layer.

Value objects and time/calendar abstractions with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain records are immutable; changes produce new records.
"""

from workflow_kernel.domain.approval import (
    ApprovalVerdict,
    StrategyConfig,
    Vote,
    VoteDecision,
)
from workflow_kernel.domain.calendar import (
    BusinessCalendar,
    BusinessHoursCalendar,
    WallClockCalendar,
)
from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from workflow_kernel.domain.sla import (
    EscalationAction,
    EscalationRule,
    SlaConfiguration,
    SlaEvaluation,
    SlaStatus,
)
from workflow_kernel.domain.task import (
    Delegation,
    Task,
    TaskPriority,
    TaskResolution,
    TaskStatus,
)
from workflow_kernel.domain.workflow import (
    ApprovalConfig,
    EngineSettings,
    HistoryEntry,
    InstanceStatus,
    Transition,
    TransitionIntent,
    TransitionOutcome,
    TransitionResult,
    WorkflowDefinition,
    WorkflowInstance,
)

__all__ = [
    "ApprovalConfig",
    "ApprovalVerdict",
    "BusinessCalendar",
    "BusinessHoursCalendar",
    "Clock",
    "Delegation",
    "DeterministicClock",
    "EngineSettings",
    "EscalationAction",
    "EscalationRule",
    "HistoryEntry",
    "InstanceStatus",
    "SlaConfiguration",
    "SlaEvaluation",
    "SlaStatus",
    "StrategyConfig",
    "SystemClock",
    "Task",
    "TaskPriority",
    "TaskResolution",
    "TaskStatus",
    "Transition",
    "TransitionIntent",
    "TransitionOutcome",
    "TransitionResult",
    "Vote",
    "VoteDecision",
    "WallClockCalendar",
    "WorkflowDefinition",
    "WorkflowInstance",
]
