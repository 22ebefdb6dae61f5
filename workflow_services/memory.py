"""
workflow_services.memory -- In-memory reference adapters for the ports.

Responsibility:
    Dict-backed repositories for definitions, instances, tasks and history.
    Used by tests and by hosts that embed the engine without a database.

Architecture position:
    Services -- adapter implementations of ``workflow_services.ports``.

Invariants enforced:
    - ``save`` is an atomic compare-and-swap on ``lock_version`` under a
      ``threading.Lock``; a stale record raises ConcurrentModificationError
      and nothing is written.
    - At most one non-terminal instance per subject: ``add`` checks under
      the same lock and raises DuplicateInstanceError.
    - Stored records are isolated from callers: instance ``data`` is deep
      copied on the way in and out.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from uuid import UUID

from workflow_kernel.domain.task import Task
from workflow_kernel.domain.workflow import (
    HistoryEntry,
    TERMINAL_INSTANCE_STATUSES,
    WorkflowDefinition,
    WorkflowInstance,
)
from workflow_kernel.exceptions import ConcurrentModificationError, DuplicateInstanceError
from workflow_kernel.logging_config import get_logger

logger = get_logger("services.memory")


class InMemoryDefinitionRepository:
    def __init__(self, definitions: list[WorkflowDefinition] | None = None) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or ():
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    def find(self, definition_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(definition_id)

    def all(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())


def _isolate(instance: WorkflowInstance) -> WorkflowInstance:
    return replace(instance, data=copy.deepcopy(instance.data))


class InMemoryInstanceRepository:
    def __init__(self) -> None:
        self._rows: dict[UUID, WorkflowInstance] = {}
        self._lock = threading.Lock()

    def find(self, instance_id: UUID) -> WorkflowInstance | None:
        with self._lock:
            row = self._rows.get(instance_id)
        return _isolate(row) if row is not None else None

    def find_by_subject(
        self, subject_type: str, subject_id: str, active_only: bool = True,
    ) -> list[WorkflowInstance]:
        with self._lock:
            rows = [
                r for r in self._rows.values()
                if r.subject_type == subject_type
                and r.subject_id == subject_id
                and (not active_only or r.status not in TERMINAL_INSTANCE_STATUSES)
            ]
        rows.reverse()
        return [_isolate(r) for r in rows]

    def add(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            if instance.id in self._rows:
                raise ValueError(f"Instance {instance.id} already exists")
            if instance.status not in TERMINAL_INSTANCE_STATUSES:
                for row in self._rows.values():
                    if (
                        row.subject_type == instance.subject_type
                        and row.subject_id == instance.subject_id
                        and row.status not in TERMINAL_INSTANCE_STATUSES
                    ):
                        raise DuplicateInstanceError(
                            instance.subject_type, instance.subject_id, str(row.id),
                        )
            self._rows[instance.id] = _isolate(instance)
        return _isolate(instance)

    def save(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            current = self._rows.get(instance.id)
            actual = current.lock_version if current is not None else None
            if actual != instance.lock_version:
                logger.debug(
                    "optimistic_lock_conflict",
                    extra={"entity_id": str(instance.id), "expected": instance.lock_version, "actual": actual},
                )
                raise ConcurrentModificationError(
                    "WorkflowInstance", str(instance.id), instance.lock_version, actual,
                )
            stored = _isolate(replace(instance, lock_version=instance.lock_version + 1))
            self._rows[instance.id] = stored
        return _isolate(stored)


class InMemoryTaskRepository:
    def __init__(self) -> None:
        self._rows: dict[UUID, Task] = {}
        self._lock = threading.Lock()

    def add(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._rows:
                raise ValueError(f"Task {task.id} already exists")
            self._rows[task.id] = task
        return task

    def find(self, task_id: UUID) -> Task | None:
        with self._lock:
            return self._rows.get(task_id)

    def save(self, task: Task) -> Task:
        with self._lock:
            current = self._rows.get(task.id)
            actual = current.lock_version if current is not None else None
            if actual != task.lock_version:
                logger.debug(
                    "optimistic_lock_conflict",
                    extra={"entity_id": str(task.id), "expected": task.lock_version, "actual": actual},
                )
                raise ConcurrentModificationError(
                    "Task", str(task.id), task.lock_version, actual,
                )
            stored = replace(task, lock_version=task.lock_version + 1)
            self._rows[task.id] = stored
        return stored

    def delete(self, task_id: UUID) -> None:
        with self._lock:
            self._rows.pop(task_id, None)

    def find_pending_for_actor(
        self, actor_id: str, roles: tuple[str, ...] = (),
    ) -> list[Task]:
        with self._lock:
            rows = list(self._rows.values())
        return [t for t in rows if t.awaits(actor_id, roles)]

    def find_open_for_instance(self, instance_id: UUID) -> list[Task]:
        with self._lock:
            return [t for t in self._rows.values() if t.instance_id == instance_id and t.is_open]

    def find_open(self) -> list[Task]:
        with self._lock:
            return [t for t in self._rows.values() if t.is_open]


class InMemoryHistoryRepository:
    def __init__(self) -> None:
        self._rows: dict[UUID, list[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def add(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            self._rows.setdefault(entry.instance_id, []).append(entry)
        return entry

    def list_for_instance(self, instance_id: UUID) -> list[HistoryEntry]:
        with self._lock:
            return list(self._rows.get(instance_id, ()))
