"""
Module: workflow_kernel.models.workflow
Responsibility: ORM persistence for workflow instances, approval tasks and
    the instance history trail.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (for DTO conversion) only.

Invariants enforced:
    - lock_version is NOT NULL and starts at 1; repositories update rows
      only with ``WHERE lock_version = :expected``.
    - Status columns are limited to their enum values by check constraints.
    - History rows are append-only (no repository path updates them) and
      numbered uniquely per instance.
    - At most one non-terminal instance per subject: ``active_subject`` is
      unique and NULL once the instance is terminal.

Failure modes:
    - IntegrityError on a duplicate primary key, a second active instance
      for a subject, or a reused history sequence.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base, UUIDString
from workflow_kernel.domain.approval import StrategyConfig, Vote, VoteDecision
from workflow_kernel.domain.task import (
    Delegation,
    Task,
    TaskPriority,
    TaskResolution,
    TaskStatus,
)
from workflow_kernel.domain.workflow import (
    HistoryEntry,
    InstanceStatus,
    TERMINAL_INSTANCE_STATUSES,
    WorkflowInstance,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class WorkflowInstanceModel(Base):
    """Persistent workflow instance."""

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled', 'suspended', 'failed')",
            name="ck_workflow_instances_status",
        ),
        Index("ix_workflow_instances_subject", "subject_type", "subject_id", "status"),
        UniqueConstraint("active_subject", name="uq_workflow_instances_active_subject"),
    )

    definition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    current_state: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # "<subject_type>:<subject_id>" while non-terminal, NULL afterwards
    active_subject: Mapped[str | None] = mapped_column(String(201), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WorkflowInstance {self.id} {self.subject_type}:{self.subject_id} "
            f"state={self.current_state} v{self.lock_version}>"
        )

    def to_dto(self) -> WorkflowInstance:
        """Convert ORM model to frozen domain DTO."""
        return WorkflowInstance(
            id=self.id,
            definition_id=self.definition_id,
            subject_type=self.subject_type,
            subject_id=self.subject_id,
            current_state=self.current_state,
            data=dict(self.data or {}),
            status=InstanceStatus(self.status),
            lock_version=self.lock_version,
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, dto: WorkflowInstance) -> WorkflowInstanceModel:
        return cls(id=dto.id, **cls.columns_from_dto(dto))

    @staticmethod
    def columns_from_dto(dto: WorkflowInstance) -> dict[str, Any]:
        """Column values (except id) for INSERT or versioned UPDATE."""
        return {
            "definition_id": dto.definition_id,
            "subject_type": dto.subject_type,
            "subject_id": dto.subject_id,
            "current_state": dto.current_state,
            "data": dict(dto.data),
            "status": dto.status.value,
            "lock_version": dto.lock_version,
            "created_by": dto.created_by,
            "created_at": dto.created_at,
            "updated_at": dto.updated_at,
            "completed_at": dto.completed_at,
            "active_subject": (
                None if dto.status in TERMINAL_INSTANCE_STATUSES
                else f"{dto.subject_type}:{dto.subject_id}"
            ),
        }


class WorkflowTaskModel(Base):
    """Persistent approval task.

    Votes, delegation hops and the strategy snapshot are small, always read
    with the task and never queried individually, so they live in JSON
    columns.
    """

    __tablename__ = "workflow_tasks"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'cancelled')",
            name="ck_workflow_tasks_status",
        ),
        Index("ix_workflow_tasks_instance_status", "instance_id", "status"),
        Index("ix_workflow_tasks_status", "status"),
    )

    instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transition: Mapped[str] = mapped_column(String(100), nullable=False)
    state_name: Mapped[str] = mapped_column(String(100), nullable=False)
    strategy: Mapped[str] = mapped_column(String(50), nullable=False)
    assignees: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    quorum: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weights: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    threshold: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    votes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    delegation_chain: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list,
    )
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    escalated_thresholds: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<WorkflowTask {self.id} {self.transition} status={self.status} "
            f"v{self.lock_version}>"
        )

    def to_dto(self) -> Task:
        """Convert ORM model to frozen domain DTO."""
        return Task(
            id=self.id,
            instance_id=self.instance_id,
            transition=self.transition,
            state_name=self.state_name,
            strategy=self.strategy,
            strategy_config=StrategyConfig(
                assignees=tuple(self.assignees),
                quorum=self.quorum,
                weights={k: Decimal(v) for k, v in (self.weights or {}).items()},
                threshold=Decimal(self.threshold) if self.threshold is not None else None,
            ),
            requested_by=self.requested_by,
            status=TaskStatus(self.status),
            priority=TaskPriority(self.priority),
            votes=tuple(
                Vote(
                    actor_id=v["actor_id"],
                    slot=v["slot"],
                    decision=VoteDecision(v["decision"]),
                    comment=v.get("comment", ""),
                    cast_at=_from_iso(v.get("cast_at")),
                )
                for v in self.votes or ()
            ),
            delegation_chain=tuple(
                Delegation(
                    from_actor_id=d["from_actor_id"],
                    to_actor_id=d["to_actor_id"],
                    delegated_at=_from_iso(d.get("delegated_at")),
                )
                for d in self.delegation_chain or ()
            ),
            due_at=self.due_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            resolution=TaskResolution(self.resolution) if self.resolution else None,
            escalated_thresholds=tuple(self.escalated_thresholds or ()),
            lock_version=self.lock_version,
        )

    @classmethod
    def from_dto(cls, dto: Task) -> WorkflowTaskModel:
        return cls(id=dto.id, **cls.columns_from_dto(dto))

    @staticmethod
    def columns_from_dto(dto: Task) -> dict[str, Any]:
        """Column values (except id) for INSERT or versioned UPDATE."""
        config = dto.strategy_config
        return {
            "instance_id": dto.instance_id,
            "transition": dto.transition,
            "state_name": dto.state_name,
            "strategy": dto.strategy,
            "assignees": list(config.assignees),
            "quorum": config.quorum,
            "weights": {k: str(v) for k, v in config.weights.items()},
            "threshold": str(config.threshold) if config.threshold is not None else None,
            "requested_by": dto.requested_by,
            "status": dto.status.value,
            "priority": dto.priority.value,
            "votes": [
                {
                    "actor_id": v.actor_id,
                    "slot": v.slot,
                    "decision": v.decision.value,
                    "comment": v.comment,
                    "cast_at": _iso(v.cast_at),
                }
                for v in dto.votes
            ],
            "delegation_chain": [
                {
                    "from_actor_id": d.from_actor_id,
                    "to_actor_id": d.to_actor_id,
                    "delegated_at": _iso(d.delegated_at),
                }
                for d in dto.delegation_chain
            ],
            "due_at": dto.due_at,
            "created_at": dto.created_at,
            "updated_at": dto.updated_at,
            "completed_at": dto.completed_at,
            "resolution": dto.resolution.value if dto.resolution else None,
            "escalated_thresholds": list(dto.escalated_thresholds),
            "lock_version": dto.lock_version,
        }


class WorkflowHistoryModel(Base):
    """Append-only audit trail row."""

    __tablename__ = "workflow_history"

    __table_args__ = (
        Index("ix_workflow_history_instance", "instance_id", "created_at"),
        UniqueConstraint("instance_id", "sequence", name="uq_workflow_history_sequence"),
    )

    instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transition: Mapped[str] = mapped_column(String(100), nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    to_state: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )
    created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dto(self) -> HistoryEntry:
        return HistoryEntry(
            id=self.id,
            instance_id=self.instance_id,
            transition=self.transition,
            from_state=self.from_state,
            to_state=self.to_state,
            actor_id=self.actor_id,
            comment=self.comment,
            metadata=dict(self.details or {}),
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: HistoryEntry, sequence: int = 0) -> WorkflowHistoryModel:
        return cls(
            id=dto.id,
            instance_id=dto.instance_id,
            transition=dto.transition,
            from_state=dto.from_state,
            to_state=dto.to_state,
            actor_id=dto.actor_id,
            comment=dto.comment,
            details=dict(dto.metadata),
            created_at=dto.created_at,
            sequence=sequence,
        )
