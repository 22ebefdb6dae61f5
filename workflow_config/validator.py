"""
Definition Validator (``workflow_config.validator``).

Responsibility
--------------
Checks workflow definitions for structural integrity before any instance
is created from them, whether they come from YAML or are built in code.

Architecture position
---------------------
**Config layer** -- build-time validation.  Called by
``workflow_config.loader`` after parsing and by ``WorkflowManager`` the
first time a definition is used.  Depends on the pure engines for guard
syntax and strategy configuration checks.

Invariants enforced
-------------------
* Exactly one initial state, and it is declared.
* Every transition's source and target states are declared.
* Transition names are unique and non-empty.
* Guard expressions pass the restricted AST validator.
* Approval gates name a registered strategy whose configuration is
  complete (quorum for quorum, positive threshold for weighted).
* Rejection and final states are declared.
* SLAs attach only to approval-gated transitions (they time tasks).

Failure modes
-------------
* Validation errors (``DefinitionValidationResult.errors``) -> the
  definition MUST NOT be instantiated; ``ensure_valid`` raises
  InvalidDefinitionError listing all of them.
* Warnings (unreachable states) do not block use.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from workflow_engines.approval import ApprovalEngine
from workflow_engines.guard_ast import validate_guard_expression
from workflow_kernel.domain.approval import is_role_reference, role_name
from workflow_kernel.domain.sla import EscalationAction
from workflow_kernel.domain.workflow import Transition, WorkflowDefinition
from workflow_kernel.exceptions import InvalidDefinitionError, InvalidStrategyConfigError

_TARGETED_ACTIONS = frozenset({EscalationAction.REASSIGN, EscalationAction.ESCALATE})


@dataclass
class DefinitionValidationResult:
    """
    Result of definition validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    definition_id: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_definition(
    definition: WorkflowDefinition,
    approval_engine: ApprovalEngine | None = None,
) -> DefinitionValidationResult:
    """
    Validate one workflow definition.

    Postconditions:
        - Returns a result with every problem found; nothing is raised.
    """
    engine = approval_engine or ApprovalEngine()
    result = DefinitionValidationResult(definition_id=definition.id)

    _validate_states(definition, result)
    _validate_transitions(definition, result)
    for transition in definition.transitions:
        _validate_guard(transition, result)
        _validate_approval(definition, transition, engine, result)
        _validate_sla(transition, result)
    _validate_reachability(definition, result)

    return result


def ensure_valid(
    definition: WorkflowDefinition,
    approval_engine: ApprovalEngine | None = None,
) -> DefinitionValidationResult:
    """Validate and raise InvalidDefinitionError on any error."""
    result = validate_definition(definition, approval_engine)
    if not result.is_valid:
        raise InvalidDefinitionError(definition.id, result.errors)
    return result


def _validate_states(definition: WorkflowDefinition, result: DefinitionValidationResult) -> None:
    if not definition.id:
        result.add_error("Definition id must not be empty")
    if not definition.states:
        result.add_error("At least one state is required")
    seen: set[str] = set()
    for state in definition.states:
        if not state:
            result.add_error("State names must not be empty")
        elif state in seen:
            result.add_error(f"Duplicate state '{state}'")
        seen.add(state)

    if definition.initial_state not in seen:
        result.add_error(f"Initial state '{definition.initial_state}' is not declared")
    for state in definition.final_states:
        if state not in seen:
            result.add_error(f"Final state '{state}' is not declared")
    if definition.rejection_state is not None and definition.rejection_state not in seen:
        result.add_error(f"Rejection state '{definition.rejection_state}' is not declared")


def _validate_transitions(definition: WorkflowDefinition, result: DefinitionValidationResult) -> None:
    states = set(definition.states)
    names: set[str] = set()
    for t in definition.transitions:
        if not t.name:
            result.add_error("Transition names must not be empty")
        elif t.name in names:
            result.add_error(f"Duplicate transition '{t.name}'")
        names.add(t.name)

        if not t.from_states:
            result.add_error(f"Transition '{t.name}' has no source state")
        for source in sorted(t.from_states):
            if source not in states:
                result.add_error(
                    f"Transition '{t.name}' source state '{source}' is not declared"
                )
        if t.to_state not in states:
            result.add_error(
                f"Transition '{t.name}' target state '{t.to_state}' is not declared"
            )


def _validate_guard(transition: Transition, result: DefinitionValidationResult) -> None:
    if transition.guard is None:
        return
    for err in validate_guard_expression(transition.guard):
        result.add_error(
            f"Transition '{transition.name}' guard: {err.message} "
            f"(expression: {transition.guard!r})"
        )


def _validate_approval(
    definition: WorkflowDefinition,
    transition: Transition,
    engine: ApprovalEngine,
    result: DefinitionValidationResult,
) -> None:
    approval = transition.approval
    if approval is None:
        return
    prefix = f"Transition '{transition.name}' approval"

    if not engine.has_strategy(approval.strategy):
        result.add_error(
            f"{prefix}: unknown strategy '{approval.strategy}' "
            f"(registered: {engine.strategy_names()})"
        )
    else:
        try:
            engine.validate_config(approval.strategy, approval.strategy_config())
        except InvalidStrategyConfigError as e:
            result.add_error(f"{prefix}: {e.reason}")

    for assignee in approval.assignees:
        if not assignee or (is_role_reference(assignee) and not role_name(assignee)):
            result.add_error(f"{prefix}: empty assignee reference")
    for slot in approval.weights:
        if slot not in approval.assignees:
            result.add_error(f"{prefix}: weight given for non-assignee '{slot}'")

    if approval.reject_to is not None and approval.reject_to not in definition.states:
        result.add_error(f"{prefix}: reject_to state '{approval.reject_to}' is not declared")
    if approval.max_delegation_depth is not None and approval.max_delegation_depth < 0:
        result.add_error(f"{prefix}: max_delegation_depth must not be negative")


def _validate_sla(transition: Transition, result: DefinitionValidationResult) -> None:
    sla = transition.sla
    if sla is None:
        return
    prefix = f"Transition '{transition.name}' sla"
    if transition.approval is None:
        result.add_error(f"{prefix}: an SLA requires an approval gate")
    if sla.on_breach_action in _TARGETED_ACTIONS and not sla.escalation_rules and not sla.breach_target:
        result.add_error(
            f"{prefix}: on_breach action '{sla.on_breach_action.value}' requires a target"
        )
    for rule in sla.escalation_rules:
        if rule.action in _TARGETED_ACTIONS and not rule.target:
            result.add_error(f"{prefix}: escalation '{rule.action.value}' requires a target")


def _validate_reachability(definition: WorkflowDefinition, result: DefinitionValidationResult) -> None:
    reachable = {definition.initial_state}
    frontier = [definition.initial_state]
    while frontier:
        state = frontier.pop()
        targets = [t.to_state for t in definition.outgoing(state)]
        for t in definition.transitions:
            if state in t.from_states and t.approval is not None:
                target = definition.rejection_target(t)
                if target:
                    targets.append(target)
        for target in targets:
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    for state in definition.states:
        if state not in reachable:
            result.add_warning(f"State '{state}' is unreachable from '{definition.initial_state}'")
