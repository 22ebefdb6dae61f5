"""
End-to-end purchase order approval.

Scenario: PurchaseOrder PO-1 is instantiated in draft, submitted into
pending_approval (one task, three assignees), approved by a 2-of-3
majority, and a late third vote is refused because the task is closed.

Run three ways:
- code-built definition over in-memory repositories
- the bundled YAML definition with a business-hours calendar
- code-built definition over the SQLAlchemy repositories (SQLite)
"""

from datetime import datetime, timezone

import pytest

from tests.conftest import APPROVERS, REQUESTER, build_po_definition
from workflow_config import load_default_config
from workflow_kernel.domain.approval import VoteDecision
from workflow_kernel.domain.calendar import BusinessHoursCalendar
from workflow_kernel.domain.task import TaskPriority, TaskResolution, TaskStatus
from workflow_kernel.domain.workflow import InstanceStatus, TransitionOutcome
from workflow_kernel.exceptions import (
    GuardConditionFailedError,
    SelfApprovalError,
    TaskAlreadyResolvedError,
)
from workflow_services.memory import InMemoryDefinitionRepository
from workflow_services.notifier import TEMPLATE_TASK_COMPLETED, TEMPLATE_TASK_ESCALATED
from workflow_services.sql import (
    SqlHistoryRepository,
    SqlInstanceRepository,
    SqlTaskRepository,
)


def run_scenario(manager, approvers=APPROVERS):
    instance = manager.instantiate(
        "purchase_order", "PurchaseOrder", "PO-1", {"amount": 5000}, actor_id=REQUESTER,
    )
    assert instance.current_state == "draft"

    submitted = manager.apply(instance.id, "submit", REQUESTER)
    assert submitted.current_state == "pending_approval"
    (task,) = manager.open_tasks(instance.id)
    assert task.assignees == tuple(approvers)

    first = manager.cast_vote(task.id, approvers[0], VoteDecision.APPROVE)
    assert first.outcome == TransitionOutcome.PENDING_APPROVAL
    second = manager.cast_vote(task.id, approvers[1], VoteDecision.APPROVE, comment="within budget")
    assert second.outcome == TransitionOutcome.APPLIED
    assert second.current_state == "approved"

    with pytest.raises(TaskAlreadyResolvedError):
        manager.cast_vote(task.id, approvers[2], VoteDecision.APPROVE)
    return instance, task


class TestInMemory:
    def test_majority_approval(self, manager, notifier):
        instance, task = run_scenario(manager)

        final = manager.get_instance(instance.id)
        assert final.status == InstanceStatus.COMPLETED
        assert final.lock_version == 3
        closed = manager.get_task(task.id)
        assert closed.status == TaskStatus.COMPLETED
        assert closed.resolution == TaskResolution.APPROVED
        assert len(closed.votes) == 2
        assert [h.transition for h in manager.history(instance.id)] == [
            "instantiate", "submit", "approve",
        ]
        assert notifier.recipients(TEMPLATE_TASK_COMPLETED) == [REQUESTER]
        assert manager.find_active_instance("PurchaseOrder", "PO-1") is None


class TestFromYaml:
    @pytest.fixture
    def yaml_manager(self, make_manager):
        config = load_default_config("purchase_order")
        return make_manager(
            definitions=InMemoryDefinitionRepository(list(config.definitions)),
            settings=config.settings,
            calendar=BusinessHoursCalendar(),
        )

    def test_majority_approval(self, yaml_manager):
        instance, task = run_scenario(yaml_manager, ("manager", "finance", "procurement"))
        assert task.priority == TaskPriority.HIGH
        # 24 working hours from Monday 09:00
        assert task.due_at == datetime(2024, 1, 3, 17, 0, tzinfo=timezone.utc)
        assert yaml_manager.get_instance(instance.id).status == InstanceStatus.COMPLETED

    def test_submit_guard(self, yaml_manager):
        instance = yaml_manager.instantiate(
            "purchase_order", "PurchaseOrder", "PO-2", {"amount": 0}, actor_id=REQUESTER,
        )
        with pytest.raises(GuardConditionFailedError):
            yaml_manager.apply(instance.id, "submit", REQUESTER)

    def test_requester_cannot_self_approve(self, make_manager):
        config = load_default_config()
        manager = make_manager(definitions=InMemoryDefinitionRepository(list(config.definitions)))
        instance = manager.instantiate(
            "purchase_order", "PurchaseOrder", "PO-3", {"amount": 10}, actor_id="manager",
        )
        manager.apply(instance.id, "submit", "manager")
        (task,) = manager.open_tasks(instance.id)
        with pytest.raises(SelfApprovalError):
            manager.cast_vote(task.id, "manager", VoteDecision.APPROVE)

    def test_overdue_approval_escalates_to_cfo(self, yaml_manager, clock, notifier):
        instance = yaml_manager.instantiate(
            "purchase_order", "PurchaseOrder", "PO-4", {"amount": 700}, actor_id=REQUESTER,
        )
        yaml_manager.apply(instance.id, "submit", REQUESTER)
        (task,) = yaml_manager.open_tasks(instance.id)

        # Wednesday 17:00 is 24 working hours
        clock.set_time(datetime(2024, 1, 3, 17, 0, tzinfo=timezone.utc))
        yaml_manager.process_escalations()
        assert notifier.recipients(TEMPLATE_TASK_ESCALATED) == ["manager", "finance", "procurement"]

        # Friday 17:00 is 40 working hours
        clock.set_time(datetime(2024, 1, 5, 17, 0, tzinfo=timezone.utc))
        yaml_manager.process_escalations()
        escalated = yaml_manager.get_task(task.id)
        assert "cfo" in escalated.assignees
        assert escalated.priority == TaskPriority.CRITICAL
        assert notifier.recipients(TEMPLATE_TASK_ESCALATED)[-1] == "cfo"


@pytest.mark.sql
class TestSqlRepositories:
    @pytest.fixture
    def sql_manager(self, make_manager, sqlite_session_factory):
        return make_manager(
            build_po_definition(),
            instances=SqlInstanceRepository(sqlite_session_factory),
            tasks=SqlTaskRepository(sqlite_session_factory),
            history=SqlHistoryRepository(sqlite_session_factory),
        )

    def test_majority_approval(self, sql_manager):
        instance, task = run_scenario(sql_manager)

        final = sql_manager.get_instance(instance.id)
        assert final.current_state == "approved"
        assert final.status == InstanceStatus.COMPLETED
        assert final.lock_version == 3

        closed = sql_manager.get_task(task.id)
        assert closed.resolution == TaskResolution.APPROVED
        assert [v.actor_id for v in closed.votes] == ["alice", "bob"]
        assert closed.votes[1].comment == "within budget"
        assert [h.transition for h in sql_manager.history(instance.id)] == [
            "instantiate", "submit", "approve",
        ]

    def test_rejection(self, sql_manager):
        instance = sql_manager.instantiate("purchase_order", "PurchaseOrder", "PO-9", {"amount": 1})
        sql_manager.apply(instance.id, "submit", REQUESTER)
        (task,) = sql_manager.open_tasks(instance.id)
        sql_manager.cast_vote(task.id, "alice", VoteDecision.REJECT)
        result = sql_manager.cast_vote(task.id, "bob", VoteDecision.REJECT)
        assert result.outcome == TransitionOutcome.REJECTED
        assert sql_manager.get_instance(instance.id).current_state == "rejected"
