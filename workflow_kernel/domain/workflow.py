"""
Canonical workflow types (``workflow_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for workflow state machines: the immutable definition
(states, transitions, approval and SLA configuration), the mutable-by-
replacement instance, the transition intent/result records and the audit
history entry.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/`` or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``WorkflowDefinition.states`` and
  ``initial_state`` is one of them (checked by
  ``workflow_config.validator``, enforced before any instance exists).
* ``WorkflowInstance.current_state`` changes only through a committed
  transition; ``lock_version`` increases by one per persisted write.
* At most one ACTIVE instance per (subject_type, subject_id), enforced by
  ``WorkflowManager.instantiate``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from workflow_kernel.domain.approval import StrategyConfig
from workflow_kernel.domain.sla import SlaConfiguration
from workflow_kernel.domain.task import TaskPriority


class InstanceStatus(str, Enum):
    """Workflow instance lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    FAILED = "failed"


TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.CANCELLED,
    InstanceStatus.FAILED,
})


@dataclass(frozen=True)
class ApprovalConfig:
    """Multi-approver gate attached to a transition.

    ``assignees`` holds actor ids or ``role:<name>`` references.
    ``reject_to`` overrides the definition's ``rejection_state``;
    ``max_delegation_depth`` of None defers to the engine setting.
    """

    strategy: str
    assignees: tuple[str, ...]
    quorum: int | None = None
    weights: Mapping[str, Decimal] = field(default_factory=dict)
    threshold: Decimal | None = None
    reject_to: str | None = None
    max_delegation_depth: int | None = None
    priority: TaskPriority = TaskPriority.MEDIUM

    def strategy_config(self) -> StrategyConfig:
        return StrategyConfig(
            assignees=tuple(self.assignees),
            quorum=self.quorum,
            weights=dict(self.weights),
            threshold=self.threshold,
        )


@dataclass(frozen=True)
class Transition:
    """A named, optionally guarded, optionally approval-gated state change."""

    name: str
    from_states: frozenset[str]
    to_state: str
    guard: str | None = None
    approval: ApprovalConfig | None = None
    sla: SlaConfiguration | None = None

    @property
    def requires_approval(self) -> bool:
        return self.approval is not None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable state machine template.

    ``final_states`` of empty means "states with no outgoing transition".
    """

    id: str
    name: str
    states: tuple[str, ...]
    initial_state: str
    transitions: tuple[Transition, ...]
    final_states: tuple[str, ...] = ()
    rejection_state: str | None = None
    forbid_self_approval: bool = False
    version: int = 1
    description: str = ""

    def get_transition(self, name: str) -> Transition | None:
        for t in self.transitions:
            if t.name == name:
                return t
        return None

    def outgoing(self, state: str) -> tuple[Transition, ...]:
        return tuple(t for t in self.transitions if state in t.from_states)

    def is_final(self, state: str) -> bool:
        if self.final_states:
            return state in self.final_states
        return not self.outgoing(state)

    def rejection_target(self, transition: Transition) -> str | None:
        if transition.approval is not None and transition.approval.reject_to:
            return transition.approval.reject_to
        return self.rejection_state


@dataclass(frozen=True)
class WorkflowInstance:
    """One subject's run through a definition."""

    id: UUID
    definition_id: str
    subject_type: str
    subject_id: str
    current_state: str
    data: dict[str, Any] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.ACTIVE
    lock_version: int = 1
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == InstanceStatus.ACTIVE


@dataclass(frozen=True)
class TransitionIntent:
    """A validated, not yet committed state change."""

    instance_id: UUID
    transition: str
    from_state: str
    to_state: str
    requires_approval: bool
    expected_version: int


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TransitionResult:
    """Result of an apply / vote / resolve call."""

    outcome: TransitionOutcome
    instance: WorkflowInstance
    transition: str
    task_id: UUID | None = None
    reason: str = ""

    @property
    def current_state(self) -> str:
        return self.instance.current_state


@dataclass(frozen=True)
class HistoryEntry:
    """Append-only audit trail record for one instance change."""

    id: UUID
    instance_id: UUID
    transition: str
    from_state: str | None
    to_state: str
    actor_id: str | None = None
    comment: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class EngineSettings:
    """Engine-wide defaults, loadable from the ``settings:`` YAML block."""

    max_delegation_depth: int = 3
    default_at_risk_ratio: float = 0.8
    system_actor_id: str = "system"
