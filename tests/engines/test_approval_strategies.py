"""
Tests for the approval strategies and the ApprovalEngine dispatch table.

Tests cover:
- UNISON / MAJORITY / QUORUM / WEIGHTED / FIRST arithmetic
- Early rejection when approval becomes impossible
- Strategy configuration validation
- Engine registry: unknown names, duplicates, per-instance isolation
- Deadlock detection in decide()
- Properties: proceed and reject are never both true; decisions are
  monotone in additional approvals
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_engines.approval import (
    ApprovalEngine,
    ApprovalStrategy,
    FirstStrategy,
    MajorityStrategy,
    QuorumStrategy,
    UnisonStrategy,
    WeightedStrategy,
)
from workflow_kernel.domain.approval import ApprovalVerdict, StrategyConfig, VoteDecision
from workflow_kernel.exceptions import (
    ApprovalDeadlockError,
    InvalidStrategyConfigError,
    UnknownStrategyError,
)

A = VoteDecision.APPROVE
R = VoteDecision.REJECT


def config(*assignees, **kwargs) -> StrategyConfig:
    return StrategyConfig(assignees=tuple(assignees), **kwargs)


THREE = config("a", "b", "c")


class TestUnison:
    def test_requires_every_assignee(self):
        s = UnisonStrategy()
        assert not s.can_proceed({"a": A, "b": A}, THREE)
        assert s.can_proceed({"a": A, "b": A, "c": A}, THREE)

    def test_single_rejection_rejects(self):
        assert UnisonStrategy().should_reject({"b": R}, THREE)

    def test_votes_from_non_assignees_are_ignored(self):
        assert not UnisonStrategy().can_proceed({"a": A, "b": A, "zed": A}, THREE)


class TestMajority:
    def test_two_of_three_proceeds(self):
        assert MajorityStrategy().can_proceed({"a": A, "c": A}, THREE)

    def test_one_of_three_pending(self):
        s = MajorityStrategy()
        assert not s.can_proceed({"a": A}, THREE)
        assert not s.should_reject({"a": A}, THREE)

    def test_two_rejections_of_three_reject(self):
        assert MajorityStrategy().should_reject({"a": R, "b": R}, THREE)

    def test_half_is_not_a_majority(self):
        four = config("a", "b", "c", "d")
        assert not MajorityStrategy().can_proceed({"a": A, "b": A}, four)


class TestQuorum:
    def test_proceeds_at_quorum(self):
        cfg = config("a", "b", "c", "d", quorum=2)
        assert QuorumStrategy().can_proceed({"a": A, "d": A}, cfg)

    def test_rejects_when_quorum_unreachable(self):
        cfg = config("a", "b", "c", quorum=2)
        s = QuorumStrategy()
        assert not s.should_reject({"a": R}, cfg)
        assert s.should_reject({"a": R, "b": R}, cfg)

    @pytest.mark.parametrize("quorum", [None, 0, 4])
    def test_invalid_quorum(self, quorum):
        with pytest.raises(InvalidStrategyConfigError):
            QuorumStrategy().validate_config(config("a", "b", "c", quorum=quorum))


class TestWeighted:
    def test_threshold_by_weight(self):
        cfg = config(
            "cfo", "manager", "analyst",
            weights={"cfo": Decimal("3"), "manager": Decimal("2")},
            threshold=Decimal("4"),
        )
        s = WeightedStrategy()
        assert not s.can_proceed({"cfo": A}, cfg)
        assert s.can_proceed({"cfo": A, "analyst": A}, cfg)

    def test_rejects_when_threshold_unreachable(self):
        cfg = config(
            "cfo", "manager", "analyst",
            weights={"cfo": Decimal("3"), "manager": Decimal("2")},
            threshold=Decimal("4"),
        )
        assert WeightedStrategy().should_reject({"cfo": R}, cfg)
        assert not WeightedStrategy().should_reject({"analyst": R}, cfg)

    def test_unweighted_slots_count_as_one(self):
        cfg = config("a", "b", threshold=Decimal("2"))
        assert WeightedStrategy().can_proceed({"a": A, "b": A}, cfg)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold": None},
            {"threshold": Decimal("0")},
            {"threshold": Decimal("1"), "weights": {"a": Decimal("-1")}},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(InvalidStrategyConfigError):
            WeightedStrategy().validate_config(config("a", "b", **kwargs))


class TestFirst:
    def test_first_vote_decides(self):
        s = FirstStrategy()
        assert s.can_proceed({"b": A, "a": R}, THREE)
        assert not s.should_reject({"b": A, "a": R}, THREE)
        assert s.should_reject({"c": R, "a": A}, THREE)

    def test_no_votes_pending(self):
        assert not FirstStrategy().can_proceed({}, THREE)


class TestBaseValidation:
    @pytest.mark.parametrize("strategy", [UnisonStrategy(), MajorityStrategy(), FirstStrategy()])
    def test_requires_assignees(self, strategy):
        with pytest.raises(InvalidStrategyConfigError):
            strategy.validate_config(config())

    def test_requires_unique_assignees(self):
        with pytest.raises(InvalidStrategyConfigError, match="unique"):
            MajorityStrategy().validate_config(config("a", "a"))


class TestApprovalEngine:
    def test_default_registry(self):
        assert ApprovalEngine().strategy_names() == [
            "first", "majority", "quorum", "unison", "weighted",
        ]

    def test_lookup_is_case_insensitive(self):
        assert isinstance(ApprovalEngine().get("MAJORITY"), MajorityStrategy)

    def test_unknown_strategy(self):
        with pytest.raises(UnknownStrategyError) as exc_info:
            ApprovalEngine().get("consensus")
        assert "majority" in exc_info.value.available

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError, match="already registered"):
            ApprovalEngine().register_strategy(MajorityStrategy())

    def test_registries_are_per_instance(self):
        class AnyTwo(ApprovalStrategy):
            name = "any_two"

            def can_proceed(self, votes, config):
                return sum(1 for d in votes.values() if d == A) >= 2

            def should_reject(self, votes, config):
                return False

        custom = ApprovalEngine()
        custom.register_strategy(AnyTwo())
        assert custom.has_strategy("any_two")
        assert not ApprovalEngine().has_strategy("any_two")

    def test_decide_verdicts(self):
        engine = ApprovalEngine()
        assert engine.decide("majority", {"a": A}, THREE) == ApprovalVerdict.PENDING
        assert engine.decide("majority", {"a": A, "b": A}, THREE) == ApprovalVerdict.PROCEED
        assert engine.decide("majority", {"a": R, "b": R}, THREE) == ApprovalVerdict.REJECT

    def test_decide_detects_deadlock(self):
        four = config("a", "b", "c", "d")
        with pytest.raises(ApprovalDeadlockError) as exc_info:
            ApprovalEngine().decide("majority", {"a": A, "b": A, "c": R, "d": R}, four)
        assert exc_info.value.approvals == 2
        assert exc_info.value.rejections == 2

    def test_decide_rejects_contradictory_strategy(self):
        class Broken(ApprovalStrategy):
            name = "broken"

            def can_proceed(self, votes, config):
                return True

            def should_reject(self, votes, config):
                return True

        engine = ApprovalEngine(strategies=(Broken(),))
        with pytest.raises(InvalidStrategyConfigError):
            engine.decide("broken", {}, THREE)


# =========================================================================
# Properties
# =========================================================================

_SLOTS = ("s1", "s2", "s3", "s4", "s5")


@st.composite
def voting_rounds(draw):
    n = draw(st.integers(min_value=1, max_value=len(_SLOTS)))
    assignees = _SLOTS[:n]
    voters = draw(st.lists(st.sampled_from(assignees), unique=True, max_size=n))
    decisions = draw(st.lists(st.sampled_from([A, R]), min_size=len(voters), max_size=len(voters)))
    quorum = draw(st.integers(min_value=1, max_value=n))
    weights = {
        slot: Decimal(draw(st.integers(min_value=0, max_value=5)))
        for slot in assignees
    }
    threshold = Decimal(draw(st.integers(min_value=1, max_value=10)))
    cfg = StrategyConfig(assignees=assignees, quorum=quorum, weights=weights, threshold=threshold)
    return cfg, dict(zip(voters, decisions))


class TestStrategyProperties:
    @settings(max_examples=300)
    @given(round_=voting_rounds(), name=st.sampled_from(["unison", "majority", "quorum", "weighted", "first"]))
    def test_never_both_proceed_and_reject(self, round_, name):
        cfg, votes = round_
        strategy = ApprovalEngine().get(name)
        assert not (strategy.can_proceed(votes, cfg) and strategy.should_reject(votes, cfg))

    @settings(max_examples=200)
    @given(round_=voting_rounds(), name=st.sampled_from(["unison", "majority", "quorum", "weighted"]))
    def test_proceed_is_stable_under_more_approvals(self, round_, name):
        cfg, votes = round_
        strategy = ApprovalEngine().get(name)
        if strategy.can_proceed(votes, cfg):
            more = dict(votes)
            for slot in cfg.assignees:
                more.setdefault(slot, A)
            assert strategy.can_proceed(more, cfg)

    @settings(max_examples=200)
    @given(n=st.integers(min_value=1, max_value=9), approvals=st.integers(min_value=0, max_value=9))
    def test_majority_matches_arithmetic(self, n, approvals):
        approvals = min(approvals, n)
        assignees = tuple(f"a{i}" for i in range(n))
        votes = {assignees[i]: A for i in range(approvals)}
        assert MajorityStrategy().can_proceed(votes, config(*assignees)) == (approvals * 2 > n)
