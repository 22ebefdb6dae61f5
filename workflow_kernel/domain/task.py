"""
Task domain types (``workflow_kernel.domain.task``).

Responsibility
--------------
Pure value objects for the approval task bound to one workflow instance
and one pending approval-gated transition.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``TASK_TRANSITIONS`` defines the valid status changes, enforced by
  ``Task.with_status``; completed and cancelled tasks are terminal.  The
  one write that bypasses it restores a task's previously stored row
  after a lost race.
* At most one vote per assignee slot and per actor.
* ``resolution`` is set if and only if status is COMPLETED.
* ``lock_version`` increases by exactly one per persisted write.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from uuid import UUID

from workflow_kernel.domain.approval import (
    StrategyConfig,
    Vote,
    VoteDecision,
    is_role_reference,
    role_name,
)
from workflow_kernel.exceptions import TaskAlreadyResolvedError


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

OPEN_TASK_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
})


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskResolution(str, Enum):
    """How a completed task concluded."""

    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Delegation:
    """One hop of a task's delegation chain."""

    from_actor_id: str
    to_actor_id: str
    delegated_at: datetime | None = None


@dataclass(frozen=True)
class Task:
    """Approval task for one pending transition of one instance.

    Contract: frozen; updates go through ``dataclasses.replace`` and a
    version-checked repository write.
    """

    id: UUID
    instance_id: UUID
    transition: str
    state_name: str
    strategy: str
    strategy_config: StrategyConfig
    requested_by: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    votes: tuple[Vote, ...] = ()
    delegation_chain: tuple[Delegation, ...] = ()
    due_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    resolution: TaskResolution | None = None
    escalated_thresholds: tuple[int, ...] = ()
    lock_version: int = 1

    @property
    def assignees(self) -> tuple[str, ...]:
        return self.strategy_config.assignees

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    def with_status(self, status: TaskStatus, **changes) -> Task:
        """Copy moved to ``status``; raises unless TASK_TRANSITIONS allows the move."""
        if not self.is_open:
            raise TaskAlreadyResolvedError(str(self.id), self.status.value)
        if status != self.status and status not in TASK_TRANSITIONS[self.status]:
            raise ValueError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, **changes)

    def votes_by_slot(self) -> dict[str, VoteDecision]:
        """Slot -> decision for current assignees, in the order votes were cast."""
        assignees = set(self.assignees)
        return {v.slot: v.decision for v in self.votes if v.slot in assignees}

    def vote_of(self, actor_id: str) -> Vote | None:
        for vote in self.votes:
            if vote.actor_id == actor_id:
                return vote
        return None

    def open_slots(self) -> tuple[str, ...]:
        voted = {v.slot for v in self.votes}
        return tuple(a for a in self.assignees if a not in voted)

    def can_be_filled_by(self, slot: str, actor_id: str, roles: tuple[str, ...] = ()) -> bool:
        if slot == actor_id:
            return True
        return is_role_reference(slot) and role_name(slot) in roles

    def is_assignee(self, actor_id: str, roles: tuple[str, ...] = ()) -> bool:
        return any(self.can_be_filled_by(a, actor_id, roles) for a in self.assignees)

    def slot_for(self, actor_id: str, roles: tuple[str, ...] = ()) -> str | None:
        """Open slot the actor would vote in: its own id first, then a role slot."""
        open_slots = self.open_slots()
        if actor_id in open_slots:
            return actor_id
        for slot in open_slots:
            if self.can_be_filled_by(slot, actor_id, roles):
                return slot
        return None

    def awaits(self, actor_id: str, roles: tuple[str, ...] = ()) -> bool:
        """True when the task is open and the actor still has a vote to cast."""
        return (
            self.is_open
            and self.vote_of(actor_id) is None
            and self.slot_for(actor_id, roles) is not None
        )
