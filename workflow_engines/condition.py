"""
workflow_engines.condition -- Guard expression evaluation.

Responsibility:
    Validate and evaluate boolean guard expressions (``amount <= 10000``,
    ``department IN ('ops', 'it') AND NOT urgent``) against a key/value
    context such as an instance's ``data``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Semantics:
    - Fields resolve by lookup in the context; dotted paths walk nested
      mappings.  An absent field is null.
    - ``field == null`` is true for absent fields; ordering comparisons
      and membership involving null are false.
    - A number compared with a numeric string compares as Decimal; any
      other incomparable ordering is false rather than an error.
    - A bare field reference evaluates by truthiness.

Failure modes:
    - InvalidExpressionError for malformed expressions or disallowed
      constructs, raised by both ``validate`` and ``evaluate``.
"""

from __future__ import annotations

import ast
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

from workflow_engines.guard_ast import field_path, parse_guard_expression
from workflow_kernel.exceptions import InvalidExpressionError


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.expr:
    """Parse and validate once; cached by expression text."""
    body, errors = parse_guard_expression(expression)
    if errors or body is None:
        raise InvalidExpressionError(
            expression, "; ".join(e.message for e in errors) or "unparseable",
        )
    return body


class ConditionEngine:
    """Evaluates guard expressions against a context mapping."""

    def validate(self, expression: str) -> None:
        """Raise InvalidExpressionError if the expression is not admissible."""
        compile_expression(expression)

    def evaluate(self, expression: str, context: Mapping[str, Any] | None) -> bool:
        tree = compile_expression(expression)
        return bool(_evaluate(tree, context or {}))


def resolve_field(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve a dotted field path against nested mappings (absent -> None).

    ``order.amount`` -> context["order"]["amount"]
    """
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


def _evaluate(node: ast.AST, context: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(bool(_evaluate(v, context)) for v in node.values)
        return any(bool(_evaluate(v, context)) for v in node.values)

    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, context)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        return operand

    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, context)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, (ast.Name, ast.Attribute)):
        return resolve_field(field_path(node), context)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_evaluate(elt, context) for elt in node.elts]

    # Unreachable for validated trees
    raise InvalidExpressionError(ast.unparse(node), f"Unsupported node {type(node).__name__}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _to_decimal(value: Any) -> Decimal | None:
    try:
        num = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return num if num.is_finite() else None


def _coerce(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring number/number and number/numeric-string pairs onto Decimal."""
    if _is_number(left) and _is_number(right):
        return Decimal(str(left)), Decimal(str(right))
    if _is_number(left) and isinstance(right, str):
        num = _to_decimal(right)
        if num is not None:
            return Decimal(str(left)), num
    if isinstance(left, str) and _is_number(right):
        num = _to_decimal(left)
        if num is not None:
            return num, Decimal(str(right))
    return left, right


def _equals(left: Any, right: Any) -> bool:
    a, b = _coerce(left, right)
    return a == b


def _contains(item: Any, container: Any) -> bool | None:
    """Membership test; None when either side is null or the container is not a collection."""
    if item is None or container is None:
        return None
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, Mapping):
        return item in container
    if isinstance(container, (list, tuple, set, frozenset)):
        return any(_equals(item, member) for member in container)
    return None


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return _equals(left, right)
    if isinstance(op, ast.NotEq):
        return not _equals(left, right)
    if isinstance(op, (ast.In, ast.NotIn)):
        found = _contains(left, right)
        if found is None:
            return False
        return found if isinstance(op, ast.In) else not found

    if left is None or right is None:
        return False
    a, b = _coerce(left, right)
    try:
        if isinstance(op, ast.Lt):
            return a < b
        if isinstance(op, ast.LtE):
            return a <= b
        if isinstance(op, ast.Gt):
            return a > b
        if isinstance(op, ast.GtE):
            return a >= b
    except (TypeError, InvalidOperation):
        return False
    return False
