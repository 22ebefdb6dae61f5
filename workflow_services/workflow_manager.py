"""
workflow_services.workflow_manager -- Workflow orchestration.

Responsibility:
    The operations callers invoke: instantiate a workflow for a subject,
    apply transitions, vote on and delegate approval tasks, evaluate SLAs
    and fire escalations, suspend / resume / cancel instances, and run
    compensable activity sequences.  Thin coordinator -- legality is
    decided by StateEngine, consensus by ApprovalEngine, deadlines by the
    SLA engine and rollback by CompensationEngine.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  The only
    layer that reads the clock and talks to repositories, the notifier and
    the actor directory.

Invariants enforced:
    - Optimistic concurrency: every write goes through a repository save
      conditional on lock_version.  A stale caller gets
      ConcurrentModificationError; nothing is silently overwritten.
    - current_state changes only through StateEngine (validated intent
      committed) or the declared rejection path of an approval gate.
    - Entering a state opens one task per approval-gated outgoing
      transition whose guard passes; leaving a state cancels the open
      tasks of the state that was left.
    - Escalations fire at most once per threshold: the marker is written
      in the same versioned task write as the escalation's effect.
    - Every instance change appends a HistoryEntry.
    - Notifier failures are logged and never undo a committed change.

Failure modes:
    - DefinitionNotFoundError, InstanceNotFoundError, TaskNotFoundError.
    - InvalidDefinitionError on first use of a malformed definition.
    - DuplicateInstanceError, WorkflowLockedError.
    - InvalidTransitionError, GuardConditionFailedError.
    - UnauthorizedTaskActionError, SelfApprovalError, DuplicateVoteError,
      TaskAlreadyResolvedError, InvalidDelegationError,
      DelegationChainExceededError.
    - ApprovalDeadlockError (vote recorded; resolve via resolve_task).
    - CompensationPartialFailureError (instance marked failed).
    - ConcurrentModificationError.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from workflow_config.validator import ensure_valid
from workflow_engines.approval import ApprovalEngine
from workflow_engines.compensation import Activity, CompensationEngine
from workflow_engines.condition import ConditionEngine
from workflow_engines.sla import compute_due_at, evaluate_sla
from workflow_engines.state import StateEngine
from workflow_kernel.domain.approval import (
    ApprovalVerdict,
    StrategyConfig,
    Vote,
    VoteDecision,
)
from workflow_kernel.domain.calendar import BusinessCalendar, WallClockCalendar
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.sla import EscalationAction, SlaEvaluation
from workflow_kernel.domain.task import (
    Delegation,
    Task,
    TaskPriority,
    TaskResolution,
    TaskStatus,
)
from workflow_kernel.domain.workflow import (
    EngineSettings,
    HistoryEntry,
    InstanceStatus,
    TERMINAL_INSTANCE_STATUSES,
    Transition,
    TransitionOutcome,
    TransitionResult,
    WorkflowDefinition,
    WorkflowInstance,
)
from workflow_kernel.exceptions import (
    ApprovalDeadlockError,
    CompensationPartialFailureError,
    ConcurrentModificationError,
    DefinitionNotFoundError,
    DelegationChainExceededError,
    DuplicateInstanceError,
    DuplicateVoteError,
    InstanceNotFoundError,
    InvalidDelegationError,
    InvalidTransitionError,
    SelfApprovalError,
    TaskAlreadyResolvedError,
    TaskNotFoundError,
    UnauthorizedTaskActionError,
    WorkflowError,
    WorkflowLockedError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_services.directory import StaticActorDirectory
from workflow_services.memory import InMemoryHistoryRepository
from workflow_services.notifier import (
    TEMPLATE_TASK_ASSIGNED,
    TEMPLATE_TASK_COMPLETED,
    TEMPLATE_TASK_ESCALATED,
    LoggingNotifier,
)
from workflow_services.ports import (
    ActorDirectory,
    DefinitionRepository,
    HistoryRepository,
    InstanceRepository,
    NotifierPort,
    TaskRepository,
)

logger = get_logger("services.workflow_manager")

# History entry names for changes that are not definition transitions
HISTORY_INSTANTIATE = "instantiate"
HISTORY_REJECT = "reject"
HISTORY_DELEGATE = "delegate"
HISTORY_ESCALATE = "escalate"
HISTORY_SUSPEND = "suspend"
HISTORY_RESUME = "resume"
HISTORY_CANCEL = "cancel"
HISTORY_FAIL = "fail"
HISTORY_UPDATE_DATA = "update_data"

_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class WorkflowManager:
    """Coordinates engines, repositories and ports for workflow operations."""

    def __init__(
        self,
        definitions: DefinitionRepository,
        instances: InstanceRepository,
        tasks: TaskRepository,
        history: HistoryRepository | None = None,
        notifier: NotifierPort | None = None,
        clock: Clock | None = None,
        calendar: BusinessCalendar | None = None,
        actor_directory: ActorDirectory | None = None,
        condition_engine: ConditionEngine | None = None,
        approval_engine: ApprovalEngine | None = None,
        state_engine: StateEngine | None = None,
        compensation_engine: CompensationEngine | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._tasks = tasks
        self._history = history or InMemoryHistoryRepository()
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or SystemClock()
        self._calendar = calendar or WallClockCalendar()
        self._directory = actor_directory or StaticActorDirectory()
        self._conditions = condition_engine or ConditionEngine()
        self._approvals = approval_engine or ApprovalEngine()
        self._states = state_engine or StateEngine(self._conditions)
        self._compensation = compensation_engine or CompensationEngine()
        self._settings = settings or EngineSettings()
        self._validated: set[tuple[str, int]] = set()

    @property
    def approval_engine(self) -> ApprovalEngine:
        return self._approvals

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.find(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(definition_id)
        key = (definition.id, definition.version)
        if key not in self._validated:
            ensure_valid(definition, self._approvals)
            self._validated.add(key)
        return definition

    def get_instance(self, instance_id: UUID) -> WorkflowInstance:
        instance = self._instances.find(instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return instance

    def get_task(self, task_id: UUID) -> Task:
        task = self._tasks.find(task_id)
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task

    def find_active_instance(self, subject_type: str, subject_id: str) -> WorkflowInstance | None:
        found = self._instances.find_by_subject(subject_type, subject_id, active_only=True)
        return found[0] if found else None

    def open_tasks(self, instance_id: UUID) -> list[Task]:
        self.get_instance(instance_id)
        return sorted(
            self._tasks.find_open_for_instance(instance_id),
            key=lambda t: (t.created_at, t.transition),
        )

    def history(self, instance_id: UUID) -> list[HistoryEntry]:
        self.get_instance(instance_id)
        return self._history.list_for_instance(instance_id)

    def inbox(self, actor_id: str) -> list[Task]:
        """Open tasks still waiting for this actor's vote, most urgent first."""
        roles = self._directory.get_actor_roles(actor_id)
        tasks = self._tasks.find_pending_for_actor(actor_id, roles)
        return sorted(
            tasks,
            key=lambda t: (
                _PRIORITY_RANK[t.priority],
                t.due_at is None,
                t.due_at or t.created_at,
                str(t.id),
            ),
        )

    def can(self, instance_id: UUID, transition_name: str) -> bool:
        instance = self.get_instance(instance_id)
        definition = self.get_definition(instance.definition_id)
        return self._states.can_transition(instance, transition_name, definition)

    def available_transitions(self, instance_id: UUID) -> list[str]:
        instance = self.get_instance(instance_id)
        definition = self.get_definition(instance.definition_id)
        return self._states.available_transitions(instance, definition)

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    def instantiate(
        self,
        definition_id: str,
        subject_type: str,
        subject_id: str,
        data: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> WorkflowInstance:
        definition = self.get_definition(definition_id)

        existing = self.find_active_instance(subject_type, subject_id)
        if existing is not None:
            raise DuplicateInstanceError(subject_type, subject_id, str(existing.id))

        now = self._clock.now()
        instance = WorkflowInstance(
            id=uuid4(),
            definition_id=definition.id,
            subject_type=subject_type,
            subject_id=subject_id,
            current_state=definition.initial_state,
            data=dict(data or {}),
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        with LogContext.bind(instance_id=instance.id, actor_id=actor_id):
            instance = self._instances.add(instance)
            self._record(
                instance, HISTORY_INSTANTIATE, None, instance.current_state, actor_id, None, now,
            )
            logger.info(
                "workflow_instantiated",
                extra={
                    "definition_id": definition.id,
                    "subject_type": subject_type,
                    "subject_id": subject_id,
                    "state": instance.current_state,
                },
            )
            self._open_tasks(instance, definition, actor_id, now)
        return instance

    def update_data(
        self,
        instance_id: UUID,
        changes: Mapping[str, Any],
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        self._check_version(instance, expected_version)
        if not instance.is_active:
            raise WorkflowLockedError(str(instance.id), instance.status.value)

        now = self._clock.now()
        merged = {**instance.data, **dict(changes)}
        saved = self._instances.save(replace(instance, data=merged, updated_at=now))
        self._record(
            saved, HISTORY_UPDATE_DATA, saved.current_state, saved.current_state,
            actor_id, None, now, {"keys": sorted(changes)},
        )
        return saved

    def suspend(self, instance_id: UUID, actor_id: str | None = None, reason: str | None = None) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.ACTIVE:
            raise WorkflowLockedError(str(instance.id), instance.status.value)
        return self._set_status(instance, InstanceStatus.SUSPENDED, HISTORY_SUSPEND, actor_id, reason)

    def resume(self, instance_id: UUID, actor_id: str | None = None, reason: str | None = None) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.SUSPENDED:
            raise InvalidTransitionError(
                str(instance.id), HISTORY_RESUME, instance.current_state,
                f"instance is {instance.status.value}, not suspended",
            )
        return self._set_status(instance, InstanceStatus.ACTIVE, HISTORY_RESUME, actor_id, reason)

    def cancel(self, instance_id: UUID, actor_id: str | None = None, reason: str | None = None) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.status in TERMINAL_INSTANCE_STATUSES:
            raise WorkflowLockedError(str(instance.id), instance.status.value)
        saved = self._set_status(instance, InstanceStatus.CANCELLED, HISTORY_CANCEL, actor_id, reason)
        self._cancel_open_tasks(saved, None, self._clock.now())
        return saved

    # ------------------------------------------------------------------
    # Transitions and approvals
    # ------------------------------------------------------------------

    def apply(
        self,
        instance_id: UUID,
        transition_name: str,
        actor_id: str,
        comment: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Request a transition.

        Ungated transitions commit immediately.  For an approval-gated
        transition the first request opens the task (if entering the state
        did not already); a request by an assignee while the task is open
        counts as that assignee's approval.
        """
        with LogContext.bind(instance_id=instance_id, actor_id=actor_id, transition=transition_name):
            instance = self.get_instance(instance_id)
            self._check_version(instance, expected_version)
            definition = self.get_definition(instance.definition_id)

            intent = self._states.apply_transition(instance, transition_name, definition)
            transition = definition.get_transition(intent.transition)

            if not intent.requires_approval:
                saved = self._commit(
                    instance, transition, definition, actor_id, comment, self._clock.now(),
                )
                return TransitionResult(TransitionOutcome.APPLIED, saved, transition.name)

            task = self._open_task_for(instance, transition)
            if task is None:
                task = self._create_task(instance, transition, actor_id, self._clock.now())
                return TransitionResult(
                    TransitionOutcome.PENDING_APPROVAL, instance, transition.name,
                    task_id=task.id, reason="approval requested",
                )

            roles = self._directory.get_actor_roles(actor_id)
            if not task.is_assignee(actor_id, roles):
                logger.info(
                    "transition_awaiting_approval",
                    extra={"task_id": str(task.id), "assignees": list(task.assignees)},
                )
                raise UnauthorizedTaskActionError(str(task.id), actor_id, "approve")
            return self.cast_vote(task.id, actor_id, VoteDecision.APPROVE, comment)

    def cast_vote(
        self,
        task_id: UUID,
        actor_id: str,
        decision: VoteDecision | str,
        comment: str | None = None,
    ) -> TransitionResult:
        decision = VoteDecision(decision)
        original = self.get_task(task_id)
        with LogContext.bind(
            task_id=task_id, instance_id=original.instance_id,
            actor_id=actor_id, transition=original.transition,
        ):
            if not original.is_open:
                raise TaskAlreadyResolvedError(str(task_id), original.status.value)
            instance = self.get_instance(original.instance_id)
            if not instance.is_active:
                raise WorkflowLockedError(str(instance.id), instance.status.value)
            definition = self.get_definition(instance.definition_id)

            roles = self._directory.get_actor_roles(actor_id)
            if not original.is_assignee(actor_id, roles):
                raise UnauthorizedTaskActionError(str(task_id), actor_id, "vote")
            if (
                definition.forbid_self_approval
                and decision == VoteDecision.APPROVE
                and actor_id == original.requested_by
            ):
                raise SelfApprovalError(str(task_id), actor_id)
            slot = original.slot_for(actor_id, roles)
            if original.vote_of(actor_id) is not None or slot is None:
                raise DuplicateVoteError(str(task_id), actor_id)

            now = self._clock.now()
            vote = Vote(
                actor_id=actor_id, slot=slot, decision=decision,
                comment=comment or "", cast_at=now,
            )
            task = original.with_status(
                TaskStatus.IN_PROGRESS, votes=original.votes + (vote,), updated_at=now,
            )

            try:
                verdict = self._approvals.decide(task.strategy, task.votes_by_slot(), task.strategy_config)
            except ApprovalDeadlockError:
                self._tasks.save(task)
                logger.error(
                    "approval_deadlock",
                    extra={"task_id": str(task.id), "strategy": task.strategy},
                )
                raise

            logger.info(
                "vote_cast",
                extra={
                    "task_id": str(task.id),
                    "slot": slot,
                    "decision": decision.value,
                    "verdict": verdict.value,
                },
            )

            if verdict == ApprovalVerdict.PENDING:
                self._tasks.save(task)
                return TransitionResult(
                    TransitionOutcome.PENDING_APPROVAL, instance, task.transition,
                    task_id=task.id, reason="awaiting further votes",
                )
            return self._conclude(task, instance, definition, verdict, actor_id, comment, now)

    def resolve_task(
        self,
        task_id: UUID,
        actor_id: str,
        approve: bool,
        comment: str | None = None,
    ) -> TransitionResult:
        """Force a verdict on an open task (manual intervention after a deadlock)."""
        task = self.get_task(task_id)
        with LogContext.bind(task_id=task_id, instance_id=task.instance_id, actor_id=actor_id):
            if not task.is_open:
                raise TaskAlreadyResolvedError(str(task_id), task.status.value)
            instance = self.get_instance(task.instance_id)
            if not instance.is_active:
                raise WorkflowLockedError(str(instance.id), instance.status.value)
            definition = self.get_definition(instance.definition_id)
            verdict = ApprovalVerdict.PROCEED if approve else ApprovalVerdict.REJECT
            logger.warning(
                "task_resolved_manually",
                extra={"task_id": str(task.id), "verdict": verdict.value},
            )
            now = self._clock.now()
            return self._conclude(
                replace(task, updated_at=now), instance, definition, verdict,
                actor_id, comment, now, {"manual": True},
            )

    def delegate(
        self,
        task_id: UUID,
        from_actor_id: str,
        to_actor_id: str,
        comment: str | None = None,
    ) -> Task:
        """Hand ``from_actor_id``'s assignee slot on an open task to another actor."""
        task = self.get_task(task_id)
        with LogContext.bind(task_id=task_id, instance_id=task.instance_id, actor_id=from_actor_id):
            if not task.is_open:
                raise TaskAlreadyResolvedError(str(task_id), task.status.value)
            instance = self.get_instance(task.instance_id)
            if not instance.is_active:
                raise WorkflowLockedError(str(instance.id), instance.status.value)
            definition = self.get_definition(instance.definition_id)
            transition = definition.get_transition(task.transition)

            roles = self._directory.get_actor_roles(from_actor_id)
            if not task.is_assignee(from_actor_id, roles):
                raise UnauthorizedTaskActionError(str(task_id), from_actor_id, "delegate")
            if to_actor_id == from_actor_id:
                raise InvalidDelegationError(
                    str(task_id), from_actor_id, to_actor_id, "cannot delegate to oneself",
                )
            if task.vote_of(from_actor_id) is not None:
                raise InvalidDelegationError(
                    str(task_id), from_actor_id, to_actor_id, "delegator has already voted",
                )
            slot = task.slot_for(from_actor_id, roles)
            if slot is None:
                raise InvalidDelegationError(
                    str(task_id), from_actor_id, to_actor_id, "no open assignee slot to delegate",
                )
            if to_actor_id in task.assignees:
                raise InvalidDelegationError(
                    str(task_id), from_actor_id, to_actor_id, "delegate is already an assignee",
                )
            if definition.forbid_self_approval and to_actor_id == task.requested_by:
                raise InvalidDelegationError(
                    str(task_id), from_actor_id, to_actor_id,
                    "requester cannot approve their own submission",
                )

            max_depth = self._max_delegation_depth(transition)
            depth = len(task.delegation_chain) + 1
            if depth > max_depth:
                raise DelegationChainExceededError(str(task_id), depth, max_depth)

            now = self._clock.now()
            config = _replace_slot(task.strategy_config, slot, to_actor_id)
            saved = self._tasks.save(
                replace(
                    task,
                    strategy_config=config,
                    delegation_chain=task.delegation_chain + (
                        Delegation(from_actor_id=from_actor_id, to_actor_id=to_actor_id, delegated_at=now),
                    ),
                    updated_at=now,
                )
            )
            self._record(
                instance, HISTORY_DELEGATE, instance.current_state, instance.current_state,
                from_actor_id, comment, now,
                {"task_id": str(task.id), "slot": slot, "to_actor_id": to_actor_id, "depth": depth},
            )
            logger.info(
                "task_delegated",
                extra={"task_id": str(task.id), "slot": slot, "to_actor_id": to_actor_id, "depth": depth},
            )
            self._notify(to_actor_id, TEMPLATE_TASK_ASSIGNED, self._task_payload(saved, instance))
            return saved

    # ------------------------------------------------------------------
    # SLA and escalation
    # ------------------------------------------------------------------

    def check_sla(self, task_id: UUID) -> SlaEvaluation | None:
        """Evaluate a task's SLA and fire the selected escalation at most once.

        Returns None when the task's transition has no SLA.  Closed tasks
        and tasks of inactive instances are evaluated but never escalated.
        """
        evaluation, _ = self._check_sla(task_id)
        return evaluation

    def check_instance_sla(self, instance_id: UUID) -> list[SlaEvaluation]:
        self.get_instance(instance_id)
        results = []
        for task in self._tasks.find_open_for_instance(instance_id):
            evaluation = self.check_sla(task.id)
            if evaluation is not None:
                results.append(evaluation)
        return results

    def process_escalations(self) -> list[SlaEvaluation]:
        """Scheduler entry point: check every open task.

        Returns the evaluations that fired an escalation.  A task that
        another caller modified meanwhile, or whose check fails, is logged
        and skipped; the remaining tasks are still checked and the next
        tick sees the skipped one again.
        """
        fired: list[SlaEvaluation] = []
        for task in self._tasks.find_open():
            try:
                evaluation, escalated = self._check_sla(task.id)
            except ConcurrentModificationError as e:
                logger.info(
                    "escalation_skipped_concurrent_update",
                    extra={"task_id": str(task.id), "error": str(e)},
                )
                continue
            except WorkflowError as e:
                logger.error(
                    "escalation_failed",
                    extra={"task_id": str(task.id), "error_code": e.code, "error": str(e)},
                    exc_info=True,
                )
                continue
            if escalated:
                fired.append(evaluation)
        logger.info("escalations_processed", extra={"fired": len(fired)})
        return fired

    def _check_sla(self, task_id: UUID) -> tuple[SlaEvaluation | None, bool]:
        task = self.get_task(task_id)
        instance = self.get_instance(task.instance_id)
        definition = self.get_definition(instance.definition_id)
        transition = definition.get_transition(task.transition)
        if transition is None or transition.sla is None or task.created_at is None:
            return None, False

        now = self._clock.now()
        if not task.is_open and task.completed_at is not None:
            now = task.completed_at
        evaluation = evaluate_sla(
            task.created_at,
            transition.sla,
            now,
            self._calendar,
            default_at_risk_ratio=self._settings.default_at_risk_ratio,
            escalated_thresholds=task.escalated_thresholds,
        )
        logger.debug(
            "sla_checked",
            extra={
                "task_id": str(task.id),
                "sla_status": evaluation.status.value,
                "elapsed": evaluation.elapsed,
            },
        )
        escalated = False
        if evaluation.should_escalate and task.is_open and instance.is_active:
            with LogContext.bind(task_id=task.id, instance_id=instance.id, transition=task.transition):
                escalated = self._escalate(task, instance, definition, evaluation)
        return evaluation, escalated

    # ------------------------------------------------------------------
    # Compensable activities
    # ------------------------------------------------------------------

    def run_activities(
        self,
        instance_id: UUID,
        activities: Sequence[Activity],
        actor_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Run activities for an instance, unwinding them if one fails.

        An incomplete unwind marks the instance failed and re-raises
        CompensationPartialFailureError.
        """
        instance = self.get_instance(instance_id)
        if not instance.is_active:
            raise WorkflowLockedError(str(instance.id), instance.status.value)

        with LogContext.bind(instance_id=instance.id, actor_id=actor_id):
            try:
                return self._compensation.run(
                    instance, activities, context if context is not None else instance.data,
                )
            except CompensationPartialFailureError as e:
                current = self.get_instance(instance_id)
                failed = self._set_status(
                    current, InstanceStatus.FAILED, HISTORY_FAIL, actor_id, str(e),
                    {"failed_activities": e.failed_activities, "compensated": e.compensated},
                )
                self._cancel_open_tasks(failed, None, self._clock.now())
                raise

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_version(self, instance: WorkflowInstance, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != instance.lock_version:
            raise ConcurrentModificationError(
                "WorkflowInstance", str(instance.id), expected_version, instance.lock_version,
            )

    def _max_delegation_depth(self, transition: Transition | None) -> int:
        if transition is not None and transition.approval is not None:
            if transition.approval.max_delegation_depth is not None:
                return transition.approval.max_delegation_depth
        return self._settings.max_delegation_depth

    def _commit(
        self,
        instance: WorkflowInstance,
        transition: Transition,
        definition: WorkflowDefinition,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        intent = self._states.apply_transition(instance, transition, definition)
        saved = self._instances.save(self._states.commit(instance, intent, definition, now))
        self._after_state_change(
            saved, definition, transition.name, intent.from_state, actor_id, comment, now, metadata,
        )
        logger.info(
            "transition_applied",
            extra={
                "from_state": intent.from_state,
                "to_state": intent.to_state,
                "status": saved.status.value,
                "lock_version": saved.lock_version,
            },
        )
        return saved

    def _after_state_change(
        self,
        saved: WorkflowInstance,
        definition: WorkflowDefinition,
        history_name: str,
        from_state: str,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._record(saved, history_name, from_state, saved.current_state, actor_id, comment, now, metadata)
        self._cancel_open_tasks(saved, from_state, now)
        if saved.is_active:
            self._open_tasks(saved, definition, actor_id, now)

    def _conclude(
        self,
        task: Task,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        verdict: ApprovalVerdict,
        actor_id: str,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Close ``task`` with ``verdict`` and apply its effect on the instance.

        ``task`` may carry unsaved changes (an escalation marker) that go
        out in the closing write.  The task write happens first; if the
        instance write then loses a race, the task is restored to its
        stored content before re-raising.
        """
        transition = definition.get_transition(task.transition)
        approved = verdict == ApprovalVerdict.PROCEED
        if approved:
            # Re-validate source state and guard before anything is written.
            self._states.apply_transition(instance, transition, definition)

        before = self.get_task(task.id)
        closed = task.with_status(
            TaskStatus.COMPLETED,
            resolution=TaskResolution.APPROVED if approved else TaskResolution.REJECTED,
            completed_at=now,
            updated_at=now,
        )
        saved_task = self._tasks.save(closed)
        details = {"task_id": str(task.id), "resolution": closed.resolution.value, **(metadata or {})}

        try:
            if approved:
                result_instance = self._commit(
                    instance, transition, definition, actor_id, comment, now, details,
                )
                outcome = TransitionOutcome.APPLIED
            else:
                result_instance = self._reject(
                    instance, transition, definition, actor_id, comment, now, details,
                )
                outcome = TransitionOutcome.REJECTED
        except ConcurrentModificationError:
            self._tasks.save(replace(before, lock_version=saved_task.lock_version))
            logger.warning(
                "task_resolution_reverted",
                extra={"task_id": str(task.id), "instance_id": str(instance.id)},
            )
            raise

        logger.info(
            "task_completed",
            extra={"task_id": str(task.id), "resolution": closed.resolution.value},
        )
        if task.requested_by:
            payload = self._task_payload(saved_task, result_instance)
            payload["resolution"] = closed.resolution.value
            self._notify(task.requested_by, TEMPLATE_TASK_COMPLETED, payload)
        return TransitionResult(
            outcome, result_instance, transition.name, task_id=task.id,
            reason=f"task {closed.resolution.value}",
        )

    def _reject(
        self,
        instance: WorkflowInstance,
        transition: Transition,
        definition: WorkflowDefinition,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any],
    ) -> WorkflowInstance:
        target = definition.rejection_target(transition)
        if target is None:
            # No rejection path: the instance stays where it is.
            self._record(
                instance, HISTORY_REJECT, instance.current_state, instance.current_state,
                actor_id, comment, now, {**metadata, "transition": transition.name},
            )
            return instance

        from_state = instance.current_state
        saved = self._instances.save(self._states.move_to(instance, target, definition, now))
        self._after_state_change(
            saved, definition, HISTORY_REJECT, from_state, actor_id, comment, now,
            {**metadata, "transition": transition.name},
        )
        logger.info(
            "transition_rejected",
            extra={"from_state": from_state, "to_state": target, "lock_version": saved.lock_version},
        )
        return saved

    def _open_task_for(self, instance: WorkflowInstance, transition: Transition) -> Task | None:
        for task in self._tasks.find_open_for_instance(instance.id):
            if task.transition == transition.name and task.state_name == instance.current_state:
                return task
        return None

    def _open_tasks(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        requested_by: str | None,
        now: datetime,
    ) -> list[Task]:
        opened = []
        for transition in definition.outgoing(instance.current_state):
            if transition.approval is None:
                continue
            if not self._states.can_transition(instance, transition, definition):
                continue
            if self._open_task_for(instance, transition) is not None:
                continue
            opened.append(self._create_task(instance, transition, requested_by, now))
        return opened

    def _create_task(
        self,
        instance: WorkflowInstance,
        transition: Transition,
        requested_by: str | None,
        now: datetime,
    ) -> Task:
        approval = transition.approval
        due_at = compute_due_at(now, transition.sla, self._calendar) if transition.sla else None
        task = self._tasks.add(
            Task(
                id=uuid4(),
                instance_id=instance.id,
                transition=transition.name,
                state_name=instance.current_state,
                strategy=approval.strategy,
                strategy_config=approval.strategy_config(),
                requested_by=requested_by,
                priority=approval.priority,
                due_at=due_at,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "task_created",
            extra={
                "task_id": str(task.id),
                "strategy": task.strategy,
                "assignees": list(task.assignees),
                "due_at": due_at,
            },
        )
        payload = self._task_payload(task, instance)
        for assignee in task.assignees:
            self._notify(assignee, TEMPLATE_TASK_ASSIGNED, payload)
        return task

    def _cancel_open_tasks(self, instance: WorkflowInstance, state: str | None, now: datetime) -> None:
        """Cancel open tasks of ``state`` (all open tasks when None)."""
        for task in self._tasks.find_open_for_instance(instance.id):
            if state is not None and task.state_name != state:
                continue
            self._cancel_task(task, now)

    def _cancel_task(self, task: Task, now: datetime) -> None:
        current = task
        for _ in range(2):
            try:
                self._tasks.save(
                    current.with_status(TaskStatus.CANCELLED, completed_at=now, updated_at=now)
                )
            except ConcurrentModificationError:
                current = self._tasks.find(task.id)
                if current is None or not current.is_open:
                    return
                continue
            logger.info("task_cancelled", extra={"task_id": str(task.id)})
            return
        logger.warning("task_cancel_conflict", extra={"task_id": str(task.id)})

    def _escalate(
        self,
        task: Task,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        evaluation: SlaEvaluation,
    ) -> bool:
        """Apply the selected escalation; False when it cannot fire yet.

        The threshold marker always travels in the same task write as the
        escalation's effect.  For AUTO_APPROVE / AUTO_REJECT that write is
        the one closing the task, so a lost instance race leaves neither.
        """
        rule = evaluation.escalation
        now = self._clock.now()
        marked = replace(
            task,
            escalated_thresholds=task.escalated_thresholds + (evaluation.threshold_key,),
            updated_at=now,
        )
        log_extra = {
            "task_id": str(task.id),
            "action": rule.action.value,
            "threshold_seconds": evaluation.threshold_key,
            "elapsed": evaluation.elapsed,
        }

        if rule.action in (EscalationAction.AUTO_APPROVE, EscalationAction.AUTO_REJECT):
            if rule.action == EscalationAction.AUTO_APPROVE:
                transition = definition.get_transition(task.transition)
                if not self._states.can_transition(instance, transition, definition):
                    # Retried on later ticks until the guard holds again.
                    logger.warning("auto_approve_blocked", extra=log_extra)
                    return False
                verdict = ApprovalVerdict.PROCEED
            else:
                verdict = ApprovalVerdict.REJECT
            self._conclude(
                marked, instance, definition, verdict, self._settings.system_actor_id,
                rule.message or None, now,
                {"escalation": rule.action.value, "threshold_seconds": evaluation.threshold_key},
            )
            logger.warning("task_escalated", extra=log_extra)
            return True

        if rule.action == EscalationAction.REASSIGN:
            marked = replace(marked, strategy_config=_reassign(task, rule.target))
        elif rule.action == EscalationAction.ESCALATE:
            config = task.strategy_config
            if rule.target and rule.target not in config.assignees:
                config = replace(config, assignees=config.assignees + (rule.target,))
            marked = replace(marked, strategy_config=config, priority=TaskPriority.CRITICAL)

        saved = self._tasks.save(marked)
        self._record(
            instance, HISTORY_ESCALATE, instance.current_state, instance.current_state,
            self._settings.system_actor_id, rule.message or None, now,
            {
                "task_id": str(task.id),
                "action": rule.action.value,
                "threshold_seconds": evaluation.threshold_key,
                "target": rule.target,
                "message": rule.message,
            },
        )
        logger.warning("task_escalated", extra=log_extra)

        payload = self._task_payload(saved, instance)
        payload.update(
            {"action": rule.action.value, "message": rule.message, "sla_status": evaluation.status.value}
        )
        recipients = [rule.target] if rule.target else list(saved.open_slots())
        for recipient in recipients:
            self._notify(recipient, TEMPLATE_TASK_ESCALATED, payload)
        return True

    def _set_status(
        self,
        instance: WorkflowInstance,
        status: InstanceStatus,
        history_name: str,
        actor_id: str | None,
        comment: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        now = self._clock.now()
        terminal = status in TERMINAL_INSTANCE_STATUSES
        saved = self._instances.save(
            replace(
                instance,
                status=status,
                updated_at=now,
                completed_at=now if terminal else instance.completed_at,
            )
        )
        self._record(
            saved, history_name, saved.current_state, saved.current_state,
            actor_id, comment, now, {"status": status.value, **(metadata or {})},
        )
        logger.info(
            "instance_status_changed",
            extra={
                "instance_id": str(saved.id),
                "from_status": instance.status.value,
                "to_status": status.value,
            },
        )
        return saved

    def _record(
        self,
        instance: WorkflowInstance,
        name: str,
        from_state: str | None,
        to_state: str,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._history.add(
            HistoryEntry(
                id=uuid4(),
                instance_id=instance.id,
                transition=name,
                from_state=from_state,
                to_state=to_state,
                actor_id=actor_id,
                comment=comment,
                metadata=dict(metadata or {}),
                created_at=now,
            )
        )

    def _task_payload(self, task: Task, instance: WorkflowInstance) -> dict[str, Any]:
        return {
            "task_id": str(task.id),
            "instance_id": str(instance.id),
            "subject_type": instance.subject_type,
            "subject_id": instance.subject_id,
            "transition": task.transition,
            "state": task.state_name,
            "priority": task.priority.value,
            "due_at": task.due_at.isoformat() if task.due_at else None,
        }

    def _notify(self, recipient: str, template_id: str, data: dict[str, Any]) -> None:
        try:
            self._notifier.notify(recipient, template_id, data)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "notification_failed",
                extra={"recipient": recipient, "template_id": template_id, "error": str(e)},
            )


def _replace_slot(config: StrategyConfig, slot: str, new_slot: str) -> StrategyConfig:
    """Swap one assignee slot for another; its weight moves with it."""
    weights = dict(config.weights)
    if slot in weights:
        weights[new_slot] = weights.pop(slot)
    return replace(
        config,
        assignees=tuple(new_slot if a == slot else a for a in config.assignees),
        weights=weights,
    )


def _reassign(task: Task, target: str) -> StrategyConfig:
    """Collapse every unvoted slot into ``target``.

    Voted slots keep their votes.  ``target`` inherits the combined weight
    of the slots it replaces, and a quorum larger than the new assignee
    count is lowered to it.
    """
    config = task.strategy_config
    open_slots = set(task.open_slots())
    if not open_slots:
        return config

    kept = tuple(a for a in config.assignees if a not in open_slots)
    weights = {k: v for k, v in config.weights.items() if k not in open_slots}
    moved = sum((config.weight_of(s) for s in open_slots), Decimal(0))
    if target in kept:
        assignees = kept
        weights[target] = config.weight_of(target) + moved
    else:
        assignees = kept + (target,)
        weights[target] = moved

    quorum = config.quorum
    if quorum is not None and quorum > len(assignees):
        quorum = len(assignees)
    return replace(config, assignees=assignees, weights=weights, quorum=quorum)
