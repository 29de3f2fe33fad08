# =============================================================================
# Calculator — Restricted Arithmetic Evaluator
# =============================================================================
#
# Grammar: numbers, + - * / % ^, parentheses, and the one-argument
# functions sqrt / log / sin / cos / tan. `^` is exponentiation.
#
# Evaluation walks the Python AST of the (rewritten) expression and only
# accepts the node types listed in the operator tables below. Nothing is
# ever passed to eval().
#
#   validate  → InvalidExpression on any character outside the allow-list
#   parse     → InvalidExpression on syntax errors
#   evaluate  → NonFiniteResult on NaN / ±inf / overflow / x÷0 / domain error
#   format    → "$1.00M", "$12.50K", "42", "3.14"
# =============================================================================

from __future__ import annotations

import ast
import math
import operator
import re
from typing import Any

from app.errors import InvalidExpression, NonFiniteResult

_FUNCTIONS = {
    "sqrt": math.sqrt,
    "log": math.log,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTION_NAMES = re.compile(r"\b(?:sqrt|log|sin|cos|tan)\b")
_ALLOWED = re.compile(r"^[0-9+\-*/().%^\s]*$")


def validate(expression: str) -> str:
    """Return the stripped expression or raise InvalidExpression."""
    cleaned = (expression or "").strip()
    if not cleaned:
        raise InvalidExpression("The expression is empty.")
    if not _ALLOWED.match(_FUNCTION_NAMES.sub("", cleaned)):
        raise InvalidExpression("The expression contains invalid characters.")
    return cleaned


def _eval(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval(node.body)
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise InvalidExpression(f"Unsupported literal: {node.value!r}")
        return float(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval(node.left), _eval(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval(node.operand))
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and len(node.args) == 1
        and not node.keywords
    ):
        return _FUNCTIONS[node.func.id](_eval(node.args[0]))
    raise InvalidExpression(f"Unsupported syntax: {type(node).__name__}")


def evaluate(expression: str) -> float:
    """Evaluate a validated expression to a finite float."""
    source = validate(expression).replace("^", "**")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise InvalidExpression(f"Could not parse expression: {exc.msg}") from exc

    try:
        result = _eval(tree)
    except (ZeroDivisionError, OverflowError, ValueError) as exc:
        raise NonFiniteResult(
            "The calculation resulted in infinity or NaN. Check your expression."
        ) from exc

    if math.isnan(result) or math.isinf(result):
        raise NonFiniteResult(
            "The calculation resulted in infinity or NaN. Check your expression."
        )
    return result


def format_result(value: float) -> str:
    """Money-style rendering: M above a million, K above a thousand."""
    magnitude = abs(value)
    if magnitude >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    if magnitude >= 1_000:
        return f"${value / 1_000:.2f}K"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def calculate(expression: str) -> dict[str, Any]:
    """
    Evaluate `expression` and build the calculator's success payload.

    Raises:
        InvalidExpression: Input outside the grammar.
        NonFiniteResult: Evaluation produced NaN or an infinite value.
    """
    value = evaluate(expression)
    result: int | float = int(value) if value.is_integer() else value
    return {
        "success": True,
        "expression": expression,
        "result": result,
        "formattedResult": format_result(value),
        "explanation": f"{expression} = {result}",
    }
