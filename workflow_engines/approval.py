"""
workflow_engines.approval -- Pluggable multi-approver consensus.

Responsibility:
    Decide whether the votes cast on a task let the pending transition
    proceed, reject it, or leave it pending, using a named strategy looked
    up in an engine-owned registry.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Holds no workflow state;
    the only state is the strategy registry, populated at construction and
    read-mostly afterwards.  Each ApprovalEngine owns its own registry, so
    engines with different strategy sets can coexist in one process.

Invariants enforced:
    - A strategy never reports proceed and reject for the same votes.
    - Only votes from current assignee slots are counted.
    - Ties resolve to pending; a pending verdict with every slot voted is
      an ApprovalDeadlockError, never an indefinite wait.

Built-in strategies:
    unison    proceed iff every assignee approved; reject on any rejection.
    majority  proceed iff approvals * 2 > assignees; reject iff
              rejections * 2 > assignees.
    quorum    proceed iff approvals >= quorum; reject once the quorum can
              no longer be reached by the outstanding voters.
    weighted  proceed iff sum(weight of approvals) >= threshold; reject once
              approvals plus outstanding weight cannot reach it.
    first     the first vote cast decides.

Failure modes:
    - UnknownStrategyError for unregistered names.
    - InvalidStrategyConfigError for missing quorum / threshold.
    - ValueError when registering a name twice.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from decimal import Decimal

from workflow_kernel.domain.approval import (
    ApprovalVerdict,
    StrategyConfig,
    VoteDecision,
)
from workflow_kernel.exceptions import (
    ApprovalDeadlockError,
    InvalidStrategyConfigError,
    UnknownStrategyError,
)
from workflow_kernel.logging_config import get_logger

logger = get_logger("engines.approval")

Votes = Mapping[str, VoteDecision]


def _counted(votes: Votes, config: StrategyConfig) -> dict[str, VoteDecision]:
    assignees = set(config.assignees)
    return {slot: d for slot, d in votes.items() if slot in assignees}


def _tally(votes: Votes, config: StrategyConfig) -> tuple[int, int]:
    counted = _counted(votes, config)
    approvals = sum(1 for d in counted.values() if d == VoteDecision.APPROVE)
    return approvals, len(counted) - approvals


class ApprovalStrategy(ABC):
    """Consensus rule: a pure function of (votes, config).

    ``votes`` maps assignee slot -> decision in the order the votes were
    cast.
    """

    name: str = ""

    @abstractmethod
    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        ...

    @abstractmethod
    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        ...

    def validate_config(self, config: StrategyConfig) -> None:
        """Raise InvalidStrategyConfigError if ``config`` is unusable."""
        if not config.assignees:
            raise InvalidStrategyConfigError(self.name, "at least one assignee is required")
        if len(set(config.assignees)) != len(config.assignees):
            raise InvalidStrategyConfigError(self.name, "assignees must be unique")


class UnisonStrategy(ApprovalStrategy):
    name = "unison"

    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        counted = _counted(votes, config)
        return bool(config.assignees) and all(
            counted.get(slot) == VoteDecision.APPROVE for slot in config.assignees
        )

    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        _, rejections = _tally(votes, config)
        return rejections > 0


class MajorityStrategy(ApprovalStrategy):
    name = "majority"

    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        approvals, _ = _tally(votes, config)
        return approvals * 2 > len(config.assignees)

    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        _, rejections = _tally(votes, config)
        return rejections * 2 > len(config.assignees)


class QuorumStrategy(ApprovalStrategy):
    name = "quorum"

    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        self.validate_config(config)
        approvals, _ = _tally(votes, config)
        return approvals >= config.quorum

    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        self.validate_config(config)
        approvals, rejections = _tally(votes, config)
        if approvals >= config.quorum:
            return False
        outstanding = len(config.assignees) - approvals - rejections
        return approvals + outstanding < config.quorum

    def validate_config(self, config: StrategyConfig) -> None:
        super().validate_config(config)
        if config.quorum is None or config.quorum < 1:
            raise InvalidStrategyConfigError(self.name, "quorum must be a positive integer")
        if config.quorum > len(config.assignees):
            raise InvalidStrategyConfigError(
                self.name,
                f"quorum {config.quorum} exceeds {len(config.assignees)} assignees",
            )


class WeightedStrategy(ApprovalStrategy):
    name = "weighted"

    def _approved_weight(self, votes: Votes, config: StrategyConfig) -> Decimal:
        counted = _counted(votes, config)
        return sum(
            (config.weight_of(slot) for slot, d in counted.items() if d == VoteDecision.APPROVE),
            Decimal(0),
        )

    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        self.validate_config(config)
        return self._approved_weight(votes, config) >= config.threshold

    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        self.validate_config(config)
        approved = self._approved_weight(votes, config)
        if approved >= config.threshold:
            return False
        counted = _counted(votes, config)
        outstanding = sum(
            (config.weight_of(slot) for slot in config.assignees if slot not in counted),
            Decimal(0),
        )
        return approved + outstanding < config.threshold

    def validate_config(self, config: StrategyConfig) -> None:
        super().validate_config(config)
        if config.threshold is None or config.threshold <= 0:
            raise InvalidStrategyConfigError(self.name, "threshold must be positive")
        if any(config.weight_of(slot) < 0 for slot in config.assignees):
            raise InvalidStrategyConfigError(self.name, "weights must not be negative")


class FirstStrategy(ApprovalStrategy):
    name = "first"

    def _first(self, votes: Votes, config: StrategyConfig) -> VoteDecision | None:
        for decision in _counted(votes, config).values():
            return decision
        return None

    def can_proceed(self, votes: Votes, config: StrategyConfig) -> bool:
        return self._first(votes, config) == VoteDecision.APPROVE

    def should_reject(self, votes: Votes, config: StrategyConfig) -> bool:
        return self._first(votes, config) == VoteDecision.REJECT


def default_strategies() -> tuple[ApprovalStrategy, ...]:
    return (
        UnisonStrategy(),
        MajorityStrategy(),
        QuorumStrategy(),
        WeightedStrategy(),
        FirstStrategy(),
    )


class ApprovalEngine:
    """Dispatch table of named approval strategies."""

    def __init__(self, strategies: tuple[ApprovalStrategy, ...] | None = None) -> None:
        self._strategies: dict[str, ApprovalStrategy] = {}
        for strategy in default_strategies() if strategies is None else strategies:
            self.register_strategy(strategy)

    def register_strategy(self, strategy: ApprovalStrategy) -> None:
        name = strategy.name.strip().lower()
        if not name:
            raise ValueError(f"Strategy {strategy.__class__.__name__} has no name")
        if name in self._strategies:
            existing = self._strategies[name]
            raise ValueError(
                f"Strategy already registered for '{name}': "
                f"{existing.__class__.__name__}"
            )
        self._strategies[name] = strategy
        logger.debug("approval_strategy_registered", extra={"strategy": name})

    def get(self, name: str) -> ApprovalStrategy:
        strategy = self._strategies.get(name.strip().lower())
        if strategy is None:
            raise UnknownStrategyError(name, self.strategy_names())
        return strategy

    def has_strategy(self, name: str) -> bool:
        return name.strip().lower() in self._strategies

    def strategy_names(self) -> list[str]:
        return sorted(self._strategies)

    def validate_config(self, name: str, config: StrategyConfig) -> None:
        self.get(name).validate_config(config)

    def can_proceed(self, name: str, votes: Votes, config: StrategyConfig) -> bool:
        return self.get(name).can_proceed(votes, config)

    def should_reject(self, name: str, votes: Votes, config: StrategyConfig) -> bool:
        return self.get(name).should_reject(votes, config)

    def decide(self, name: str, votes: Votes, config: StrategyConfig) -> ApprovalVerdict:
        """Combine both predicates into one verdict.

        Raises:
            ApprovalDeadlockError: every assignee voted and no verdict.
        """
        strategy = self.get(name)
        proceed = strategy.can_proceed(votes, config)
        reject = strategy.should_reject(votes, config)
        if proceed and reject:
            # Strategy contract violation; never resolve ambiguously.
            raise InvalidStrategyConfigError(
                strategy.name, "strategy reported both proceed and reject",
            )
        if proceed:
            return ApprovalVerdict.PROCEED
        if reject:
            return ApprovalVerdict.REJECT

        approvals, rejections = _tally(votes, config)
        if approvals + rejections >= len(config.assignees):
            raise ApprovalDeadlockError(
                strategy.name, approvals, rejections, len(config.assignees),
            )
        return ApprovalVerdict.PENDING
