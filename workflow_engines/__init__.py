"""
Module: workflow_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    workflow engines.  This is the canonical import surface for higher
    layers (workflow_services, workflow_config).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel (domain, exceptions, logging) and
    sibling engine modules.  MUST NOT import workflow_services or
    workflow_config.

Invariants enforced:
    - Purity: engines never read the clock.  Instants are passed in by the
      services layer.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from workflow_engines import ApprovalEngine, ConditionEngine, StateEngine
    from workflow_engines.compensation import Activity, FunctionActivity
    from workflow_engines.sla import evaluate_sla
"""

from workflow_engines.approval import (
    ApprovalEngine,
    ApprovalStrategy,
    FirstStrategy,
    MajorityStrategy,
    QuorumStrategy,
    UnisonStrategy,
    WeightedStrategy,
)
from workflow_engines.compensation import (
    Activity,
    CompensationEngine,
    FunctionActivity,
)
from workflow_engines.condition import ConditionEngine
from workflow_engines.guard_ast import validate_guard_expression
from workflow_engines.sla import compute_due_at, evaluate_sla
from workflow_engines.state import StateEngine

__all__ = [
    "Activity",
    "ApprovalEngine",
    "ApprovalStrategy",
    "CompensationEngine",
    "ConditionEngine",
    "FirstStrategy",
    "FunctionActivity",
    "MajorityStrategy",
    "QuorumStrategy",
    "StateEngine",
    "UnisonStrategy",
    "WeightedStrategy",
    "compute_due_at",
    "evaluate_sla",
    "validate_guard_expression",
]
