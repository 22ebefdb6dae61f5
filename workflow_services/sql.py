"""
workflow_services.sql -- SQLAlchemy adapters for the persistence ports.

Responsibility:
    Durable instance, task and history repositories over the ORM models in
    ``workflow_kernel.models``.  Each call runs in its own short
    transaction opened from an injected session factory.

Architecture position:
    Services -- adapter implementations of ``workflow_services.ports``.

Invariants enforced:
    - Optimistic locking: writes are ``UPDATE ... WHERE id = :id AND
      lock_version = :expected`` setting ``lock_version = :expected + 1``.
      A rowcount other than one raises ConcurrentModificationError and the
      transaction rolls back.
    - Repositories return frozen domain DTOs, never ORM objects.
    - A second non-terminal instance for a subject is refused by the
      ``active_subject`` unique key and surfaces as DuplicateInstanceError.
    - History sequence numbers are unique per instance; a concurrent
      append that takes the same number is retried.

Failure modes:
    - ConcurrentModificationError on a lost race.
    - DuplicateInstanceError when the subject already has an active instance.
    - IntegrityError when adding a row whose id already exists.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from workflow_kernel.db.engine import session_scope
from workflow_kernel.domain.task import OPEN_TASK_STATUSES, Task
from workflow_kernel.domain.workflow import (
    TERMINAL_INSTANCE_STATUSES,
    HistoryEntry,
    WorkflowInstance,
)
from workflow_kernel.exceptions import ConcurrentModificationError, DuplicateInstanceError
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.workflow import (
    WorkflowHistoryModel,
    WorkflowInstanceModel,
    WorkflowTaskModel,
)

logger = get_logger("services.sql")

_OPEN_STATUSES = sorted(s.value for s in OPEN_TASK_STATUSES)
_SEQUENCE_ATTEMPTS = 3


def _versioned_update(session: Session, model, entity_type: str, record) -> None:
    """Conditional write of ``record`` with its lock_version bumped by one."""
    values = model.columns_from_dto(record)
    values["lock_version"] = record.lock_version + 1
    result = session.execute(
        update(model)
        .where(model.id == record.id, model.lock_version == record.lock_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        actual = session.scalar(select(model.lock_version).where(model.id == record.id))
        logger.debug(
            "optimistic_lock_conflict",
            extra={
                "entity_type": entity_type,
                "entity_id": str(record.id),
                "expected": record.lock_version,
                "actual": actual,
            },
        )
        raise ConcurrentModificationError(
            entity_type, str(record.id), record.lock_version, actual,
        )


class SqlInstanceRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory

    def find(self, instance_id: UUID) -> WorkflowInstance | None:
        with session_scope(self._factory) as session:
            row = session.get(WorkflowInstanceModel, instance_id)
            return row.to_dto() if row is not None else None

    def find_by_subject(
        self, subject_type: str, subject_id: str, active_only: bool = True,
    ) -> list[WorkflowInstance]:
        stmt = select(WorkflowInstanceModel).where(
            WorkflowInstanceModel.subject_type == subject_type,
            WorkflowInstanceModel.subject_id == subject_id,
        )
        if active_only:
            stmt = stmt.where(
                WorkflowInstanceModel.status.not_in([s.value for s in TERMINAL_INSTANCE_STATUSES])
            )
        stmt = stmt.order_by(WorkflowInstanceModel.created_at.desc())
        with session_scope(self._factory) as session:
            return [row.to_dto() for row in session.scalars(stmt)]

    def add(self, instance: WorkflowInstance) -> WorkflowInstance:
        try:
            with session_scope(self._factory) as session:
                session.add(WorkflowInstanceModel.from_dto(instance))
        except IntegrityError as e:
            if instance.status not in TERMINAL_INSTANCE_STATUSES:
                existing = self.find_by_subject(instance.subject_type, instance.subject_id)
                if existing:
                    raise DuplicateInstanceError(
                        instance.subject_type, instance.subject_id, str(existing[0].id),
                    ) from e
            raise
        return instance

    def save(self, instance: WorkflowInstance) -> WorkflowInstance:
        with session_scope(self._factory) as session:
            _versioned_update(session, WorkflowInstanceModel, "WorkflowInstance", instance)
        return replace(instance, lock_version=instance.lock_version + 1)


class SqlTaskRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory

    def add(self, task: Task) -> Task:
        with session_scope(self._factory) as session:
            session.add(WorkflowTaskModel.from_dto(task))
        return task

    def find(self, task_id: UUID) -> Task | None:
        with session_scope(self._factory) as session:
            row = session.get(WorkflowTaskModel, task_id)
            return row.to_dto() if row is not None else None

    def save(self, task: Task) -> Task:
        with session_scope(self._factory) as session:
            _versioned_update(session, WorkflowTaskModel, "Task", task)
        return replace(task, lock_version=task.lock_version + 1)

    def delete(self, task_id: UUID) -> None:
        with session_scope(self._factory) as session:
            row = session.get(WorkflowTaskModel, task_id)
            if row is not None:
                session.delete(row)

    def _open(self, *criteria) -> list[Task]:
        stmt = (
            select(WorkflowTaskModel)
            .where(WorkflowTaskModel.status.in_(_OPEN_STATUSES), *criteria)
            .order_by(WorkflowTaskModel.created_at)
        )
        with session_scope(self._factory) as session:
            return [row.to_dto() for row in session.scalars(stmt)]

    def find_pending_for_actor(
        self, actor_id: str, roles: tuple[str, ...] = (),
    ) -> list[Task]:
        # Assignees live in a JSON column; slot matching happens on the DTO.
        return [t for t in self._open() if t.awaits(actor_id, roles)]

    def find_open_for_instance(self, instance_id: UUID) -> list[Task]:
        return self._open(WorkflowTaskModel.instance_id == instance_id)

    def find_open(self) -> list[Task]:
        return self._open()


class SqlHistoryRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory

    def add(self, entry: HistoryEntry) -> HistoryEntry:
        for attempt in range(1, _SEQUENCE_ATTEMPTS + 1):
            try:
                with session_scope(self._factory) as session:
                    last = session.scalar(
                        select(func.max(WorkflowHistoryModel.sequence)).where(
                            WorkflowHistoryModel.instance_id == entry.instance_id,
                        )
                    )
                    session.add(WorkflowHistoryModel.from_dto(entry, sequence=(last or 0) + 1))
                return entry
            except IntegrityError:
                if attempt == _SEQUENCE_ATTEMPTS:
                    raise
                logger.debug(
                    "history_sequence_conflict",
                    extra={"instance_id": str(entry.instance_id), "attempt": attempt},
                )
        return entry

    def list_for_instance(self, instance_id: UUID) -> list[HistoryEntry]:
        stmt = (
            select(WorkflowHistoryModel)
            .where(WorkflowHistoryModel.instance_id == instance_id)
            .order_by(WorkflowHistoryModel.sequence)
        )
        with session_scope(self._factory) as session:
            return [row.to_dto() for row in session.scalars(stmt)]
