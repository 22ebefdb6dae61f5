"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the engine (HTTP handlers, schedulers, batch jobs) must react to
failures precisely: a stale caller retries, a guard failure is shown to the
user, a partial compensation pages an operator. Parsing message strings for
that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        manager.apply(instance_id, "approve", actor_id)
    except Exception as e:
        if "modified" in str(e):  # FRAGILE - message might change
            retry()

Example - RIGHT way (what this module enables):
    try:
        manager.apply(instance_id, "approve", actor_id)
    except ConcurrentModificationError as e:
        log.info("stale version", extra={"expected": e.expected_version})
        retry()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from WorkflowError:

    WorkflowError (base)
    |
    +-- DefinitionError
    |   +-- DefinitionNotFoundError
    |   +-- InvalidDefinitionError
    |
    +-- InstanceError
    |   +-- InstanceNotFoundError
    |   +-- DuplicateInstanceError
    |   +-- WorkflowLockedError
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |   +-- GuardConditionFailedError
    |
    +-- ExpressionError
    |   +-- InvalidExpressionError
    |
    +-- ApprovalError
    |   +-- UnknownStrategyError
    |   +-- InvalidStrategyConfigError
    |   +-- ApprovalDeadlockError
    |
    +-- TaskError
    |   +-- TaskNotFoundError
    |   +-- TaskAlreadyResolvedError
    |   +-- UnauthorizedTaskActionError
    |   +-- SelfApprovalError
    |   +-- DuplicateVoteError
    |   +-- DelegationChainExceededError
    |   +-- InvalidDelegationError
    |
    +-- CompensationError
    |   +-- CompensationPartialFailureError
    |
    +-- ConcurrencyError
        +-- ConcurrentModificationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                           | When Raised
-------------|--------------------------------|---------------------------------------
Definition   | DEFINITION_NOT_FOUND           | Definition id unknown to repository
             | INVALID_DEFINITION             | Structural validation failed
-------------|--------------------------------|---------------------------------------
Instance     | INSTANCE_NOT_FOUND             | Instance id unknown to repository
             | DUPLICATE_INSTANCE             | Subject already has an active instance
             | WORKFLOW_LOCKED                | Instance is not active
-------------|--------------------------------|---------------------------------------
Transition   | INVALID_TRANSITION             | Unknown name or wrong source state
             | GUARD_CONDITION_FAILED         | Guard evaluated false
-------------|--------------------------------|---------------------------------------
Expression   | INVALID_EXPRESSION             | Malformed or disallowed guard syntax
-------------|--------------------------------|---------------------------------------
Approval     | UNKNOWN_STRATEGY               | Strategy name not registered
             | INVALID_STRATEGY_CONFIG        | Missing quorum / threshold etc.
             | APPROVAL_DEADLOCK              | All votes cast, no verdict
-------------|--------------------------------|---------------------------------------
Task         | TASK_NOT_FOUND                 | Task id unknown to repository
             | TASK_ALREADY_RESOLVED          | Task completed or cancelled
             | UNAUTHORIZED_TASK_ACTION       | Actor is not a current assignee
             | SELF_APPROVAL                  | Requester approving own submission
             | DUPLICATE_VOTE                 | Actor already voted on the task
             | DELEGATION_CHAIN_EXCEEDED      | Delegation depth above maximum
             | INVALID_DELEGATION             | Delegation target/source not allowed
-------------|--------------------------------|---------------------------------------
Compensation | COMPENSATION_PARTIAL_FAILURE   | One or more undo steps failed
-------------|--------------------------------|---------------------------------------
Concurrency  | CONCURRENT_MODIFICATION        | lock_version mismatch on write

===============================================================================
PROPAGATION
===============================================================================

- Validation and authorization errors surface synchronously and are never
  retried by the engine.
- ConcurrencyError is the only category a caller should retry (after
  reloading the record).
- CompensationPartialFailureError is raised once per sweep and lists every
  activity whose undo failed.
"""


class WorkflowError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_ERROR"


# Definition-related exceptions


class DefinitionError(WorkflowError):
    """Base exception for workflow definition errors."""

    code: str = "DEFINITION_ERROR"


class DefinitionNotFoundError(DefinitionError):
    """Workflow definition with given ID was not found."""

    code: str = "DEFINITION_NOT_FOUND"

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition not found: {definition_id}")


class InvalidDefinitionError(DefinitionError):
    """Workflow definition failed structural validation."""

    code: str = "INVALID_DEFINITION"

    def __init__(self, definition_id: str, errors: list[str]):
        self.definition_id = definition_id
        self.errors = list(errors)
        super().__init__(
            f"Invalid workflow definition {definition_id}: "
            f"{len(self.errors)} error(s): " + "; ".join(self.errors)
        )


# Instance-related exceptions


class InstanceError(WorkflowError):
    """Base exception for workflow instance errors."""

    code: str = "INSTANCE_ERROR"


class InstanceNotFoundError(InstanceError):
    """Workflow instance with given ID was not found."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class DuplicateInstanceError(InstanceError):
    """The subject already has an active workflow instance."""

    code: str = "DUPLICATE_INSTANCE"

    def __init__(self, subject_type: str, subject_id: str, existing_instance_id: str):
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.existing_instance_id = existing_instance_id
        super().__init__(
            f"Subject {subject_type}:{subject_id} already has active "
            f"workflow instance {existing_instance_id}"
        )


class WorkflowLockedError(InstanceError):
    """The instance is not active (suspended, completed, cancelled or failed)."""

    code: str = "WORKFLOW_LOCKED"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Workflow instance {instance_id} is {status}; only active "
            "instances accept changes"
        )


# Transition-related exceptions


class TransitionError(WorkflowError):
    """Base exception for transition errors."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """Transition is unknown or not legal from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, instance_id: str, transition: str, current_state: str, reason: str):
        self.instance_id = instance_id
        self.transition = transition
        self.current_state = current_state
        self.reason = reason
        super().__init__(
            f"Invalid transition '{transition}' for instance {instance_id} "
            f"in state '{current_state}': {reason}"
        )


class GuardConditionFailedError(TransitionError):
    """Transition guard evaluated to false."""

    code: str = "GUARD_CONDITION_FAILED"

    def __init__(self, instance_id: str, transition: str, guard: str):
        self.instance_id = instance_id
        self.transition = transition
        self.guard = guard
        super().__init__(
            f"Guard not satisfied for transition '{transition}' on instance "
            f"{instance_id}: {guard}"
        )


# Expression-related exceptions


class ExpressionError(WorkflowError):
    """Base exception for guard expression errors."""

    code: str = "EXPRESSION_ERROR"


class InvalidExpressionError(ExpressionError):
    """Guard expression is malformed or uses a disallowed construct."""

    code: str = "INVALID_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid expression {expression!r}: {reason}")


# Approval-related exceptions


class ApprovalError(WorkflowError):
    """Base exception for approval consensus errors."""

    code: str = "APPROVAL_ERROR"


class UnknownStrategyError(ApprovalError):
    """No approval strategy registered under the given name."""

    code: str = "UNKNOWN_STRATEGY"

    def __init__(self, strategy: str, available: list[str]):
        self.strategy = strategy
        self.available = available
        super().__init__(
            f"Unknown approval strategy '{strategy}'. Registered: {available}"
        )


class InvalidStrategyConfigError(ApprovalError):
    """Strategy configuration is incomplete or inconsistent."""

    code: str = "INVALID_STRATEGY_CONFIG"

    def __init__(self, strategy: str, reason: str):
        self.strategy = strategy
        self.reason = reason
        super().__init__(f"Invalid configuration for strategy '{strategy}': {reason}")


class ApprovalDeadlockError(ApprovalError):
    """
    Every assignee has voted and the strategy reached no verdict.

    Requires manual intervention (WorkflowManager.resolve_task).
    """

    code: str = "APPROVAL_DEADLOCK"

    def __init__(self, strategy: str, approvals: int, rejections: int, assignees: int):
        self.strategy = strategy
        self.approvals = approvals
        self.rejections = rejections
        self.assignees = assignees
        super().__init__(
            f"Approval deadlock under '{strategy}': {approvals} approve / "
            f"{rejections} reject of {assignees} assignees, no verdict"
        )


# Task-related exceptions


class TaskError(WorkflowError):
    """Base exception for task lifecycle errors."""

    code: str = "TASK_ERROR"


class TaskNotFoundError(TaskError):
    """Task with given ID was not found."""

    code: str = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskAlreadyResolvedError(TaskError):
    """Task is completed or cancelled and accepts no further actions."""

    code: str = "TASK_ALREADY_RESOLVED"

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is already {status}")


class UnauthorizedTaskActionError(TaskError):
    """Actor is not among the task's current assignees."""

    code: str = "UNAUTHORIZED_TASK_ACTION"

    def __init__(self, task_id: str, actor_id: str, action: str):
        self.task_id = task_id
        self.actor_id = actor_id
        self.action = action
        super().__init__(
            f"Actor {actor_id} is not authorized to {action} on task {task_id}"
        )


class SelfApprovalError(TaskError):
    """Requester attempted to approve their own submission."""

    code: str = "SELF_APPROVAL"

    def __init__(self, task_id: str, actor_id: str):
        self.task_id = task_id
        self.actor_id = actor_id
        super().__init__(
            f"Actor {actor_id} cannot approve task {task_id} they submitted"
        )


class DuplicateVoteError(TaskError):
    """Actor (or the assignee slot they fill) already voted."""

    code: str = "DUPLICATE_VOTE"

    def __init__(self, task_id: str, actor_id: str):
        self.task_id = task_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} has already voted on task {task_id}")


class DelegationChainExceededError(TaskError):
    """Delegation would exceed the configured maximum chain depth."""

    code: str = "DELEGATION_CHAIN_EXCEEDED"

    def __init__(self, task_id: str, depth: int, max_depth: int):
        self.task_id = task_id
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Delegation chain for task {task_id} would reach depth {depth}, "
            f"maximum is {max_depth}"
        )


class InvalidDelegationError(TaskError):
    """Delegation source or target is not acceptable."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, task_id: str, from_actor_id: str, to_actor_id: str, reason: str):
        self.task_id = task_id
        self.from_actor_id = from_actor_id
        self.to_actor_id = to_actor_id
        self.reason = reason
        super().__init__(
            f"Cannot delegate task {task_id} from {from_actor_id} to "
            f"{to_actor_id}: {reason}"
        )


# Compensation-related exceptions


class CompensationError(WorkflowError):
    """Base exception for saga compensation errors."""

    code: str = "COMPENSATION_ERROR"


class CompensationPartialFailureError(CompensationError):
    """
    One or more compensating actions failed during a rollback sweep.

    The sweep still ran every compensation; ``failures`` lists each activity
    that could not be undone as ``(activity_name, error_message)`` pairs in
    the order they were attempted.
    """

    code: str = "COMPENSATION_PARTIAL_FAILURE"

    def __init__(
        self,
        instance_id: str,
        failures: list[tuple[str, str]],
        compensated: list[str],
    ):
        self.instance_id = instance_id
        self.failures = list(failures)
        self.compensated = list(compensated)
        names = ", ".join(name for name, _ in self.failures)
        super().__init__(
            f"Compensation incomplete for instance {instance_id}: "
            f"{len(self.failures)} activity(ies) failed to compensate ({names})"
        )

    @property
    def failed_activities(self) -> list[str]:
        return [name for name, _ in self.failures]


# Concurrency-related exceptions


class ConcurrencyError(WorkflowError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """
    Optimistic lock conflict: the record changed since it was read.

    The caller should reload and retry.
    """

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        actual_version: int | None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: expected "
            f"version {expected_version}, found {actual_version}"
        )
