"""
workflow_engines.state -- Transition legality for workflow instances.

Responsibility:
    Decide whether a named transition may fire for an instance, record the
    validated intent, and produce the post-transition instance record once
    the caller is ready to commit.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Time is passed in; the
    engine never reads a clock.  Guard evaluation is delegated to
    ConditionEngine.

Invariants enforced:
    - current_state changes only when current_state is in the transition's
      from_states and its guard evaluates true.
    - Validation order: source state, then guard, then instance status.
    - ``can_transition`` is advisory and never raises.

Failure modes:
    - InvalidTransitionError: unknown transition or wrong source state.
    - GuardConditionFailedError: guard evaluated false.
    - WorkflowLockedError: instance is not active.
    - InvalidExpressionError: guard is malformed (from ConditionEngine).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from workflow_engines.condition import ConditionEngine
from workflow_kernel.domain.workflow import (
    InstanceStatus,
    Transition,
    TransitionIntent,
    WorkflowDefinition,
    WorkflowInstance,
)
from workflow_kernel.exceptions import (
    GuardConditionFailedError,
    InvalidTransitionError,
    WorkflowLockedError,
)
from workflow_kernel.logging_config import get_logger

logger = get_logger("engines.state")


class StateEngine:
    """Validates and commits state-machine transitions."""

    def __init__(self, condition_engine: ConditionEngine | None = None) -> None:
        self._conditions = condition_engine or ConditionEngine()

    def resolve(
        self,
        instance: WorkflowInstance,
        transition: str | Transition,
        definition: WorkflowDefinition,
    ) -> Transition:
        if isinstance(transition, Transition):
            return transition
        found = definition.get_transition(transition)
        if found is None:
            raise InvalidTransitionError(
                str(instance.id), transition, instance.current_state,
                f"definition '{definition.id}' has no such transition",
            )
        return found

    def apply_transition(
        self,
        instance: WorkflowInstance,
        transition: str | Transition,
        definition: WorkflowDefinition,
    ) -> TransitionIntent:
        """Validate ``transition`` for ``instance`` and return the intent.

        Nothing is written; the caller commits the intent once any
        required approval has resolved.
        """
        t = self.resolve(instance, transition, definition)

        if instance.current_state not in t.from_states:
            raise InvalidTransitionError(
                str(instance.id), t.name, instance.current_state,
                f"allowed from {sorted(t.from_states)}",
            )

        if t.guard and not self._conditions.evaluate(t.guard, instance.data):
            raise GuardConditionFailedError(str(instance.id), t.name, t.guard)

        if instance.status != InstanceStatus.ACTIVE:
            raise WorkflowLockedError(str(instance.id), instance.status.value)

        return TransitionIntent(
            instance_id=instance.id,
            transition=t.name,
            from_state=instance.current_state,
            to_state=t.to_state,
            requires_approval=t.requires_approval,
            expected_version=instance.lock_version,
        )

    def can_transition(
        self,
        instance: WorkflowInstance,
        transition: str | Transition,
        definition: WorkflowDefinition,
    ) -> bool:
        try:
            self.apply_transition(instance, transition, definition)
        except Exception as e:  # noqa: BLE001
            logger.debug(
                "transition_not_available",
                extra={
                    "instance_id": str(instance.id),
                    "transition": getattr(transition, "name", transition),
                    "error": str(e),
                },
            )
            return False
        return True

    def available_transitions(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
    ) -> list[str]:
        return [
            t.name
            for t in definition.outgoing(instance.current_state)
            if self.can_transition(instance, t, definition)
        ]

    def commit(
        self,
        instance: WorkflowInstance,
        intent: TransitionIntent,
        definition: WorkflowDefinition,
        now: datetime,
    ) -> WorkflowInstance:
        """Return the instance as it is after ``intent`` takes effect.

        The returned record still carries the version it was read at; the
        repository write bumps ``lock_version``.
        """
        if intent.instance_id != instance.id:
            raise ValueError(
                f"Intent for {intent.instance_id} applied to instance {instance.id}"
            )
        if instance.current_state != intent.from_state:
            raise InvalidTransitionError(
                str(instance.id), intent.transition, instance.current_state,
                f"intent was recorded in state '{intent.from_state}'",
            )

        final = definition.is_final(intent.to_state)
        return replace(
            instance,
            current_state=intent.to_state,
            status=InstanceStatus.COMPLETED if final else instance.status,
            completed_at=now if final else instance.completed_at,
            updated_at=now,
        )

    def move_to(
        self,
        instance: WorkflowInstance,
        state: str,
        definition: WorkflowDefinition,
        now: datetime,
    ) -> WorkflowInstance:
        """Route to ``state`` outside the transition table (rejection path)."""
        if state not in definition.states:
            raise InvalidTransitionError(
                str(instance.id), "reject", instance.current_state,
                f"rejection state '{state}' is not declared",
            )
        final = definition.is_final(state)
        return replace(
            instance,
            current_state=state,
            status=InstanceStatus.COMPLETED if final else instance.status,
            completed_at=now if final else instance.completed_at,
            updated_at=now,
        )
