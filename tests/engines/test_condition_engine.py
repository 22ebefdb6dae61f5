"""
Tests for guard expression validation and evaluation.

Tests cover:
- Restricted AST: allowed vocabulary, rejected constructs
- Evaluation: comparisons, membership, boolean logic, null handling
- Numeric coercion between numbers and numeric strings
- Property: evaluation never raises for validated expressions
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_engines.condition import ConditionEngine, compile_expression, resolve_field
from workflow_engines.guard_ast import normalize_expression, validate_guard_expression
from workflow_kernel.exceptions import InvalidExpressionError


@pytest.fixture
def engine():
    return ConditionEngine()


class TestGuardValidation:
    @pytest.mark.parametrize(
        "expression",
        [
            "amount > 0",
            "amount <= 10000 and currency == 'USD'",
            "department IN ('ops', 'it') AND NOT urgent",
            "order.total >= -5",
            "status not in ['closed', 'void']",
            "approver == null OR approver != requester",
            "flag == TRUE",
            "(a > 1 or b > 1) and c",
        ],
    )
    def test_allowed_expressions(self, expression):
        assert validate_guard_expression(expression) == []

    @pytest.mark.parametrize(
        "expression,fragment",
        [
            ("__import__('os').system('ls')", "function call"),
            ("amount + 1 > 2", "BinOp"),
            ("items[0] == 1", "Subscript"),
            ("a is None", "Is"),
            ("x if y else z", "IfExp"),
            ("lambda: 1", "Lambda"),
            ("amount in [other]", "literals"),
            ("~flag", "unary"),
        ],
    )
    def test_rejected_constructs(self, expression, fragment):
        errors = validate_guard_expression(expression)
        assert errors
        assert any(fragment.lower() in e.message.lower() for e in errors)

    def test_empty_expression_is_an_error(self):
        assert validate_guard_expression("   ")[0].message == "Empty expression"

    def test_syntax_error_reported(self):
        errors = validate_guard_expression("amount >")
        assert errors[0].message.startswith("Syntax error")

    def test_aliases_are_rewritten(self):
        assert normalize_expression("a AND NOT b").split() == ["a", "and", "not", "b"]

    def test_compile_raises_typed_error(self):
        with pytest.raises(InvalidExpressionError):
            compile_expression("open('x')")


class TestEvaluation:
    def test_simple_comparison(self, engine):
        assert engine.evaluate("amount > 100", {"amount": 150})
        assert not engine.evaluate("amount > 100", {"amount": 50})

    def test_boolean_logic(self, engine):
        ctx = {"amount": 500, "department": "ops", "urgent": False}
        assert engine.evaluate("department IN ('ops', 'it') AND NOT urgent", ctx)
        assert not engine.evaluate("department == 'hr' OR amount > 1000", ctx)

    def test_not_in(self, engine):
        assert engine.evaluate("status not in ['closed']", {"status": "open"})

    def test_dotted_path(self, engine):
        assert engine.evaluate("order.total >= 10", {"order": {"total": 10}})

    def test_absent_field_equals_null(self, engine):
        assert engine.evaluate("approver == null", {})
        assert not engine.evaluate("approver != null", {})

    def test_ordering_with_null_is_false(self, engine):
        assert not engine.evaluate("amount > 0", {})
        assert not engine.evaluate("amount <= 0", {})

    def test_membership_in_null_is_false(self, engine):
        assert not engine.evaluate("'a' in tags", {})
        assert not engine.evaluate("'a' not in tags", {})

    def test_null_member_is_never_found(self, engine):
        assert not engine.evaluate("region IN ('eu', null)", {})
        assert not engine.evaluate("region NOT IN ('eu', 'us')", {"region": None})
        assert engine.evaluate("region IN ('eu', null)", {"region": "eu"})

    def test_membership_in_field_collection(self, engine):
        assert engine.evaluate("'vip' in tags", {"tags": ["new", "vip"]})

    def test_numeric_string_coercion(self, engine):
        assert engine.evaluate("amount > 100", {"amount": "250.50"})
        assert engine.evaluate("amount == 1", {"amount": 1.0})

    def test_incomparable_types_are_false(self, engine):
        assert not engine.evaluate("amount > 100", {"amount": "lots"})

    def test_bare_field_truthiness(self, engine):
        assert engine.evaluate("urgent", {"urgent": True})
        assert not engine.evaluate("urgent", {"urgent": 0})

    def test_chained_comparison(self, engine):
        assert engine.evaluate("1 < amount < 10", {"amount": 5})
        assert not engine.evaluate("1 < amount < 10", {"amount": 10})

    def test_none_context_is_empty(self, engine):
        assert engine.evaluate("amount == null", None)

    def test_invalid_expression_raises(self, engine):
        with pytest.raises(InvalidExpressionError):
            engine.evaluate("amount.__class__()", {"amount": 1})


class TestResolveField:
    def test_non_mapping_intermediate(self):
        assert resolve_field("a.b", {"a": 5}) is None

    def test_nested(self):
        assert resolve_field("a.b.c", {"a": {"b": {"c": 3}}}) == 3


_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-10**6, max_value=10**6),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=8),
)


class TestEvaluationProperties:
    @settings(max_examples=200)
    @given(
        value=_scalars,
        op=st.sampled_from(["==", "!=", "<", "<=", ">", ">="]),
        literal=st.sampled_from(["0", "100", "'abc'", "'42'", "null", "true", "-3.5"]),
    )
    def test_comparisons_never_raise(self, value, op, literal):
        result = ConditionEngine().evaluate(f"field {op} {literal}", {"field": value})
        assert isinstance(result, bool)

    @settings(max_examples=100)
    @given(a=st.integers(-1000, 1000), b=st.integers(-1000, 1000))
    def test_integer_comparisons_match_python(self, a, b):
        engine = ConditionEngine()
        ctx = {"a": a, "b": b}
        assert engine.evaluate("a < b", ctx) == (a < b)
        assert engine.evaluate("a >= b", ctx) == (a >= b)
        assert engine.evaluate("a == b", ctx) == (a == b)

    @settings(max_examples=100)
    @given(x=st.booleans(), y=st.booleans())
    def test_not_distributes_over_and(self, x, y):
        engine = ConditionEngine()
        ctx = {"x": x, "y": y}
        assert engine.evaluate("not (x and y)", ctx) == engine.evaluate("not x or not y", ctx)
