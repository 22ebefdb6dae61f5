"""
workflow_services.ports -- Host-supplied collaborators of the WorkflowManager.

Responsibility:
    Structural protocols for persistence, notification and identity.  The
    manager depends only on these; reference adapters live in
    ``workflow_services.memory``, ``workflow_services.sql``,
    ``workflow_services.notifier`` and ``workflow_services.directory``.

Architecture position:
    Services -- interface definitions only, no behaviour.

Invariants enforced:
    - ``save`` on instance and task repositories is the optimistic-lock
      write: it succeeds only when the stored ``lock_version`` equals the
      record's, stores ``lock_version + 1`` and returns the stored record.
      On mismatch it raises ConcurrentModificationError and writes nothing.
    - Lookups return None for unknown ids; the manager raises the typed
      not-found error.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from workflow_kernel.domain.task import Task
from workflow_kernel.domain.workflow import (
    HistoryEntry,
    WorkflowDefinition,
    WorkflowInstance,
)


@runtime_checkable
class DefinitionRepository(Protocol):
    def find(self, definition_id: str) -> WorkflowDefinition | None:
        ...


@runtime_checkable
class InstanceRepository(Protocol):
    def find(self, instance_id: UUID) -> WorkflowInstance | None:
        ...

    def find_by_subject(
        self, subject_type: str, subject_id: str, active_only: bool = True,
    ) -> list[WorkflowInstance]:
        """Instances for a subject, newest first.

        ``active_only`` keeps instances that have not reached a terminal
        status (active or suspended).
        """
        ...

    def add(self, instance: WorkflowInstance) -> WorkflowInstance:
        ...

    def save(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Conditional write; see module docstring."""
        ...


@runtime_checkable
class TaskRepository(Protocol):
    def add(self, task: Task) -> Task:
        ...

    def find(self, task_id: UUID) -> Task | None:
        ...

    def save(self, task: Task) -> Task:
        """Conditional write; see module docstring."""
        ...

    def delete(self, task_id: UUID) -> None:
        ...

    def find_pending_for_actor(
        self, actor_id: str, roles: tuple[str, ...] = (),
    ) -> list[Task]:
        """Open tasks with an unvoted slot the actor (or one of its roles) fills."""
        ...

    def find_open_for_instance(self, instance_id: UUID) -> list[Task]:
        ...

    def find_open(self) -> list[Task]:
        ...


@runtime_checkable
class HistoryRepository(Protocol):
    def add(self, entry: HistoryEntry) -> HistoryEntry:
        ...

    def list_for_instance(self, instance_id: UUID) -> list[HistoryEntry]:
        """Entries in the order they were added."""
        ...


@runtime_checkable
class NotifierPort(Protocol):
    """Best-effort notification delivery."""

    def notify(self, recipient: str, template_id: str, data: Mapping[str, Any]) -> None:
        """``recipient`` is an actor id or a ``role:<name>`` reference."""
        ...


@runtime_checkable
class ActorDirectory(Protocol):
    """Identity lookups used for authorization checks."""

    def get_actor_roles(self, actor_id: str) -> tuple[str, ...]:
        """Return all roles for an actor."""
        ...

    def has_role(self, actor_id: str, role: str) -> bool:
        """Check if actor has a specific role."""
        ...
