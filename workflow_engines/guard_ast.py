"""
Restricted AST for guard expressions.

Guard expressions in workflow definitions must use a fixed operator set.
This module normalises the textual vocabulary, parses expressions with
Python's own parser in ``eval`` mode and validates the tree, rejecting
anything that could execute code.

Allowed:
  - Comparisons: ==, !=, <, <=, >, >=
  - Membership: in, not in (also IN / NOT IN) against list/tuple literals
    or fields holding collections
  - Logical: and, or, not (also AND / OR / NOT), parentheses
  - Field access: bare names and dotted paths (``order.amount``)
  - Literals: numbers (optionally negated), quoted strings,
    true/false/null (any case spelling below), True/False/None

Rejected:
  - function calls, arithmetic, subscripts, lambdas, comprehensions,
    conditional expressions, identity tests, assignment
"""

import ast
import io
import tokenize
from dataclasses import dataclass


# Alternative spellings accepted in definitions. Every alias has the same
# length as its replacement so token positions stay valid.
KEYWORD_ALIASES: dict[str, str] = {
    "AND": "and",
    "OR": "or",
    "NOT": "not",
    "IN": "in",
    "true": "True",
    "TRUE": "True",
    "false": "False",
    "FALSE": "False",
    "null": "None",
    "NULL": "None",
}

ALLOWED_COMPARISONS: tuple[type, ...] = (
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn,
)


@dataclass(frozen=True)
class GuardASTError:
    """A validation error found in a guard expression."""

    expression: str
    message: str
    node_type: str = ""
    lineno: int = 0
    col_offset: int = 0


def normalize_expression(expression: str) -> str:
    """Rewrite keyword aliases (``AND``, ``null``...) to Python spelling.

    Raises:
        SyntaxError / tokenize.TokenError on untokenizable input.
    """
    tokens = []
    for tok in tokenize.generate_tokens(io.StringIO(expression).readline):
        if tok.type == tokenize.NAME and tok.string in KEYWORD_ALIASES:
            tok = tok._replace(string=KEYWORD_ALIASES[tok.string])
        tokens.append(tok)
    return tokenize.untokenize(tokens)


def parse_guard_expression(expression: str) -> tuple[ast.expr | None, list[GuardASTError]]:
    """Parse and validate; returns the expression body and any errors."""
    if not isinstance(expression, str) or not expression.strip():
        return None, [GuardASTError(expression=str(expression), message="Empty expression")]

    try:
        normalized = normalize_expression(expression.strip())
        tree = ast.parse(normalized, mode="eval")
    except (SyntaxError, tokenize.TokenError) as e:
        msg = e.msg if isinstance(e, SyntaxError) else str(e.args[0])
        return None, [
            GuardASTError(
                expression=expression,
                message=f"Syntax error: {msg}",
                lineno=getattr(e, "lineno", 0) or 0,
                col_offset=getattr(e, "offset", 0) or 0,
            )
        ]

    errors: list[GuardASTError] = []
    _validate_node(tree.body, expression, errors)
    return tree.body, errors


def validate_guard_expression(expression: str) -> list[GuardASTError]:
    """Validate a guard expression against the restricted AST.

    Returns a list of errors. Empty list means the expression is valid.
    """
    _, errors = parse_guard_expression(expression)
    return errors


def field_path(node: ast.AST) -> str | None:
    """Dotted path for a Name/Attribute chain, None for anything else."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = field_path(node.value)
        return f"{base}.{node.attr}" if base is not None else None
    return None


def _validate_node(
    node: ast.AST, expression: str, errors: list[GuardASTError]
) -> None:
    """Recursively validate an AST node."""

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            _validate_node(node.operand, expression, errors)
        elif isinstance(node.op, (ast.USub, ast.UAdd)) and _is_number_literal(node.operand):
            pass
        else:
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed unary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if not isinstance(op, ALLOWED_COMPARISONS):
                errors.append(
                    GuardASTError(
                        expression=expression,
                        message=f"Disallowed comparison: {type(op).__name__}",
                        node_type=type(op).__name__,
                    )
                )

    elif isinstance(node, ast.Attribute):
        if field_path(node) is None:
            errors.append(
                GuardASTError(
                    expression=expression,
                    message="Only dotted field paths are allowed for attribute access",
                    node_type="Attribute",
                )
            )

    elif isinstance(node, ast.Name):
        pass  # field reference, resolved against the context at evaluation

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed constant type: {type(node.value).__name__}",
                    node_type="Constant",
                )
            )

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            is_literal = isinstance(elt, ast.Constant) or (
                isinstance(elt, ast.UnaryOp)
                and isinstance(elt.op, (ast.USub, ast.UAdd))
                and _is_number_literal(elt.operand)
            )
            if not is_literal:
                errors.append(
                    GuardASTError(
                        expression=expression,
                        message="List elements must be literals",
                        node_type=type(elt).__name__,
                    )
                )
            else:
                _validate_node(elt, expression, errors)

    elif isinstance(node, ast.Call):
        errors.append(
            GuardASTError(
                expression=expression,
                message=f"Disallowed function call: {field_path(node.func) or 'expression'}",
                node_type="Call",
            )
        )

    else:
        errors.append(
            GuardASTError(
                expression=expression,
                message=f"Disallowed AST node type: {type(node).__name__}",
                node_type=type(node).__name__,
            )
        )


def _is_number_literal(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Constant)
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
    )
