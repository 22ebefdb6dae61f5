"""
SQLAlchemy repository tests against in-memory SQLite.

Tests cover:
- Instance and task round trips through the ORM models
- Conditional UPDATE on lock_version: stale writes raise and change nothing
- Subject lookup ignores terminal instances
- One non-terminal instance per subject, enforced by a unique key
- Open-task queries and actor inbox matching over JSON assignee lists
- History ordering by per-instance sequence; sequences are unique
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, StatementError

from workflow_kernel.db.engine import (
    get_engine,
    get_session_factory,
    reset_engine,
    session_scope,
)
from workflow_kernel.domain.approval import StrategyConfig, Vote, VoteDecision
from workflow_kernel.domain.task import (
    Delegation,
    Task,
    TaskPriority,
    TaskResolution,
    TaskStatus,
)
from workflow_kernel.domain.workflow import HistoryEntry, InstanceStatus, WorkflowInstance
from workflow_kernel.exceptions import ConcurrentModificationError, DuplicateInstanceError
from workflow_kernel.models import WorkflowHistoryModel, WorkflowInstanceModel
from workflow_services.sql import (
    SqlHistoryRepository,
    SqlInstanceRepository,
    SqlTaskRepository,
)

pytestmark = pytest.mark.sql

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_instance(subject_id="PO-1", **overrides):
    values = dict(
        id=uuid4(),
        definition_id="purchase_order",
        subject_type="PurchaseOrder",
        subject_id=subject_id,
        current_state="draft",
        data={"amount": 5000, "lines": [{"sku": "A-1", "qty": 2}]},
        created_by="requester",
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return WorkflowInstance(**values)


def make_task(instance_id, **overrides):
    values = dict(
        id=uuid4(),
        instance_id=instance_id,
        transition="approve",
        state_name="pending_approval",
        strategy="weighted",
        strategy_config=StrategyConfig(
            assignees=("alice", "role:finance"),
            weights={"alice": Decimal("2.5")},
            threshold=Decimal("3"),
        ),
        requested_by="requester",
        priority=TaskPriority.HIGH,
        due_at=NOW + timedelta(hours=8),
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return Task(**values)


@pytest.fixture
def instances(sqlite_session_factory):
    return SqlInstanceRepository(sqlite_session_factory)


@pytest.fixture
def tasks(sqlite_session_factory):
    return SqlTaskRepository(sqlite_session_factory)


@pytest.fixture
def history(sqlite_session_factory):
    return SqlHistoryRepository(sqlite_session_factory)


class TestInstanceRepository:
    def test_round_trip(self, instances):
        instance = make_instance()
        instances.add(instance)
        loaded = instances.find(instance.id)
        assert loaded == instance
        assert loaded.created_at.tzinfo is not None

    def test_find_missing(self, instances):
        assert instances.find(uuid4()) is None

    def test_save_bumps_version(self, instances):
        instance = instances.add(make_instance())
        saved = instances.save(replace(instance, current_state="pending_approval"))
        assert saved.lock_version == 2
        loaded = instances.find(instance.id)
        assert loaded.current_state == "pending_approval"
        assert loaded.lock_version == 2

    def test_stale_save_rejected(self, instances):
        instance = instances.add(make_instance())
        instances.save(replace(instance, data={"amount": 1}))

        with pytest.raises(ConcurrentModificationError) as exc_info:
            instances.save(replace(instance, data={"amount": 2}))
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert instances.find(instance.id).data == {"amount": 1}

    def test_find_by_subject_skips_terminal(self, instances):
        done = instances.add(
            make_instance(status=InstanceStatus.COMPLETED, completed_at=NOW, created_at=NOW)
        )
        live = instances.add(make_instance(created_at=NOW + timedelta(hours=1)))
        assert [i.id for i in instances.find_by_subject("PurchaseOrder", "PO-1")] == [live.id]
        everything = instances.find_by_subject("PurchaseOrder", "PO-1", active_only=False)
        assert [i.id for i in everything] == [live.id, done.id]

    def test_second_active_instance_for_subject_refused(self, instances):
        first = instances.add(make_instance())
        with pytest.raises(DuplicateInstanceError) as exc_info:
            instances.add(make_instance())
        assert exc_info.value.existing_instance_id == str(first.id)
        assert [i.id for i in instances.find_by_subject("PurchaseOrder", "PO-1")] == [first.id]

    def test_suspended_instance_still_holds_subject(self, instances):
        instances.add(make_instance(status=InstanceStatus.SUSPENDED))
        with pytest.raises(DuplicateInstanceError):
            instances.add(make_instance())

    def test_subject_released_once_terminal(self, instances):
        first = instances.add(make_instance())
        instances.save(replace(first, status=InstanceStatus.CANCELLED, completed_at=NOW))
        second = instances.add(make_instance(created_at=NOW + timedelta(hours=1)))
        instances.add(make_instance(status=InstanceStatus.COMPLETED, completed_at=NOW))
        assert [i.id for i in instances.find_by_subject("PurchaseOrder", "PO-1")] == [second.id]

    def test_other_subjects_unaffected(self, instances):
        instances.add(make_instance("PO-1"))
        instances.add(make_instance("PO-2"))
        instances.add(make_instance("PO-1", subject_type="Invoice"))
        assert len(instances.find_by_subject("PurchaseOrder", "PO-2")) == 1

    def test_naive_datetime_rejected(self, instances):
        with pytest.raises((ValueError, StatementError)):
            instances.add(make_instance(created_at=datetime(2024, 1, 1, 9, 0)))


class TestTaskRepository:
    def test_round_trip_with_votes_and_delegation(self, instances, tasks):
        instance = instances.add(make_instance())
        task = make_task(
            instance.id,
            votes=(
                Vote(
                    actor_id="dave", slot="role:finance", decision=VoteDecision.APPROVE,
                    comment="ok", cast_at=NOW,
                ),
            ),
            delegation_chain=(Delegation(from_actor_id="bob", to_actor_id="alice", delegated_at=NOW),),
            escalated_thresholds=(28800,),
            status=TaskStatus.IN_PROGRESS,
        )
        tasks.add(task)
        assert tasks.find(task.id) == task

    def test_close_and_conflict(self, instances, tasks):
        instance = instances.add(make_instance())
        task = tasks.add(make_task(instance.id))
        closed = tasks.save(
            replace(
                task, status=TaskStatus.COMPLETED, resolution=TaskResolution.APPROVED, completed_at=NOW,
            )
        )
        assert closed.lock_version == 2
        assert tasks.find(task.id).resolution == TaskResolution.APPROVED

        with pytest.raises(ConcurrentModificationError):
            tasks.save(replace(task, status=TaskStatus.CANCELLED))
        assert tasks.find(task.id).status == TaskStatus.COMPLETED

    def test_open_queries(self, instances, tasks):
        instance = instances.add(make_instance())
        open_task = tasks.add(make_task(instance.id))
        tasks.add(make_task(instance.id, status=TaskStatus.CANCELLED))

        assert [t.id for t in tasks.find_open_for_instance(instance.id)] == [open_task.id]
        assert [t.id for t in tasks.find_open()] == [open_task.id]
        assert [t.id for t in tasks.find_pending_for_actor("alice")] == [open_task.id]
        assert [t.id for t in tasks.find_pending_for_actor("dave", ("finance",))] == [open_task.id]
        assert tasks.find_pending_for_actor("dave") == []

    def test_delete(self, instances, tasks):
        instance = instances.add(make_instance())
        task = tasks.add(make_task(instance.id))
        tasks.delete(task.id)
        assert tasks.find(task.id) is None


class TestHistoryRepository:
    def test_entries_in_insertion_order(self, history):
        instance_id = uuid4()
        names = ["instantiate", "submit", "delegate", "approve"]
        for name in names:
            # identical timestamps: ordering comes from the sequence column
            history.add(
                HistoryEntry(
                    id=uuid4(), instance_id=instance_id, transition=name,
                    from_state="a", to_state="b", metadata={"step": name}, created_at=NOW,
                )
            )
        history.add(
            HistoryEntry(id=uuid4(), instance_id=uuid4(), transition="other", from_state=None, to_state="a")
        )

        entries = history.list_for_instance(instance_id)
        assert [e.transition for e in entries] == names
        assert entries[2].metadata == {"step": "delegate"}

    def test_sequence_unique_per_instance(self, sqlite_session_factory, history):
        instance_id = uuid4()
        entry = HistoryEntry(
            id=uuid4(), instance_id=instance_id, transition="submit", from_state="a", to_state="b",
        )
        history.add(entry)

        with pytest.raises(IntegrityError):
            with session_scope(sqlite_session_factory) as session:
                session.add(WorkflowHistoryModel.from_dto(replace(entry, id=uuid4()), sequence=1))
        assert [e.id for e in history.list_for_instance(instance_id)] == [entry.id]

    def test_sequences_numbered_from_one(self, sqlite_session_factory, history):
        instance_id = uuid4()
        for name in ("instantiate", "submit", "approve"):
            history.add(
                HistoryEntry(id=uuid4(), instance_id=instance_id, transition=name, from_state=None, to_state="a")
            )
        stmt = select(WorkflowHistoryModel.sequence).where(WorkflowHistoryModel.instance_id == instance_id)
        with session_scope(sqlite_session_factory) as session:
            assert sorted(session.scalars(stmt)) == [1, 2, 3]


class TestEngineLifecycle:
    def test_rollback_on_error(self, sqlite_session_factory, instances):
        instance = make_instance()
        with pytest.raises(RuntimeError):
            with session_scope(sqlite_session_factory) as session:
                session.add(WorkflowInstanceModel.from_dto(instance))
                session.flush()
                raise RuntimeError("abort")
        assert instances.find(instance.id) is None

    def test_uninitialized_engine(self):
        reset_engine()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session_factory()
