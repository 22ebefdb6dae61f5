"""
Approval domain types (``workflow_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for multi-approver consensus: vote decisions, cast
votes, the verdict an approval strategy reaches, and the per-task strategy
configuration snapshot.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/`` or outer layers.

Invariants enforced
-------------------
* A verdict is exactly one of proceed / reject / pending -- strategies
  never report proceed and reject at the same time.
* ``StrategyConfig.assignees`` is the authoritative list of voting slots;
  votes from anything that is not a slot are ignored by strategies.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


ROLE_PREFIX = "role:"


class VoteDecision(str, Enum):
    """Decision an assignee casts on a task."""

    APPROVE = "approve"
    REJECT = "reject"


class ApprovalVerdict(str, Enum):
    """Outcome of evaluating the votes cast so far."""

    PROCEED = "proceed"
    REJECT = "reject"
    PENDING = "pending"


@dataclass(frozen=True)
class Vote:
    """A single cast vote. Immutable.

    ``slot`` is the assignee entry the vote fills: the actor id itself for
    direct assignment, or a ``role:<name>`` entry the actor satisfied.
    """

    actor_id: str
    slot: str
    decision: VoteDecision
    comment: str = ""
    cast_at: datetime | None = None


@dataclass(frozen=True)
class StrategyConfig:
    """Configuration handed to an approval strategy.

    ``quorum`` is used by QUORUM; ``weights`` and ``threshold`` by WEIGHTED
    (slots without an explicit weight count as 1).
    """

    assignees: tuple[str, ...]
    quorum: int | None = None
    weights: Mapping[str, Decimal] = field(default_factory=dict)
    threshold: Decimal | None = None

    def weight_of(self, slot: str) -> Decimal:
        return Decimal(str(self.weights.get(slot, 1)))


def is_role_reference(assignee: str) -> bool:
    return assignee.startswith(ROLE_PREFIX)


def role_name(assignee: str) -> str:
    return assignee[len(ROLE_PREFIX):]
