"""
Value semantics of the template language.

Covers the undefined sentinel, text conversion of rendered values,
truthiness and evaluation of binary operators. Arithmetic is lenient by
default: division and modulo by zero yield 0, `+` concatenates as soon as
one side is not numeric.
"""

from __future__ import annotations

import json
import math
from typing import Any, Callable, Optional

from .errors import EvaluationError


class _Undefined:
    """Result of looking up a name that is bound nowhere."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return ""

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


class SafeString(str):
    """Text that must not be escaped again on output."""
    pass


def is_missing(value: Any) -> bool:
    return value is None or value is UNDEFINED


def to_text(value: Any) -> str:
    """
    Converts a rendered value to output text.

    None and undefined become "", booleans are lowercase, integral floats
    lose their fractional part, sequences are joined with commas.
    """
    if is_missing(value):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(to_text(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def truthy(value: Any) -> bool:
    return bool(value)


def to_number(value: Any) -> Optional[float]:
    """
    Numeric value for arithmetic and comparisons, None if not coercible.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    return None


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------- operators ----------

def evaluate_comparison(operator: str, left: Any, right: Any) -> bool:
    """
    Loose comparison: operands convertible to numbers compare numerically,
    None and undefined are equal to each other only.
    """
    if operator in ("==", "!="):
        equal = _loose_equal(left, right)
        return equal if operator == "==" else not equal

    left_num, right_num = to_number(left), to_number(right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    elif left_num is not None and right_num is not None and not is_missing(left) and not is_missing(right):
        a, b = left_num, right_num
    else:
        return False

    if operator == "<":
        return a < b
    if operator == ">":
        return a > b
    if operator == "<=":
        return a <= b
    if operator == ">=":
        return a >= b
    raise ValueError(f"Unknown comparison operator: {operator}")


def _loose_equal(left: Any, right: Any) -> bool:
    if is_missing(left) or is_missing(right):
        return is_missing(left) and is_missing(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if _is_numeric(left) or _is_numeric(right) or isinstance(left, bool) or isinstance(right, bool):
        left_num, right_num = to_number(left), to_number(right)
        if left_num is not None and right_num is not None:
            return left_num == right_num
    return left == right


def evaluate_logical(operator: str, left: Any, right: Callable[[], Any]) -> Any:
    """
    && and || with short circuit; the result is one of the operands.
    """
    if operator == "&&":
        return right() if truthy(left) else left
    if operator == "||":
        return left if truthy(left) else right()
    raise ValueError(f"Unknown logical operator: {operator}")


def evaluate_arithmetic(operator: str, left: Any, right: Any, *, strict: bool = False) -> Any:
    """
    Arithmetic over loosely coerced numbers.

    Raises:
        EvaluationError: In strict mode on division by zero or non-numeric operands
    """
    if operator == "+":
        if isinstance(left, str) or isinstance(right, str):
            return to_text(left) + to_text(right)
        left_num, right_num = to_number(left), to_number(right)
        if left_num is None or right_num is None or is_missing(left) or is_missing(right):
            if strict and not (isinstance(left, (list, tuple)) or isinstance(right, (list, tuple))):
                raise EvaluationError(f"Cannot add {to_text(left)!r} and {to_text(right)!r}")
            return to_text(left) + to_text(right)
        return left_num + right_num

    left_num, right_num = to_number(left), to_number(right)
    if left_num is None or right_num is None:
        if strict:
            raise EvaluationError(f"Non-numeric operand for '{operator}'")
        return math.nan

    if operator == "-":
        return left_num - right_num
    if operator == "*":
        return left_num * right_num
    if operator in ("/", "%"):
        if right_num == 0:
            if strict:
                raise EvaluationError(f"Division by zero in '{operator}'")
            return 0
        if operator == "/":
            return left_num / right_num
        # Sign follows the dividend
        remainder = math.fmod(left_num, right_num)
        if isinstance(left_num, int) and isinstance(right_num, int):
            return int(remainder)
        return remainder
    raise ValueError(f"Unknown arithmetic operator: {operator}")


LOGICAL_OPERATORS = frozenset({"&&", "||"})
COMPARISON_OPERATORS = frozenset({"==", "!=", "<", ">", "<=", ">="})
ARITHMETIC_OPERATORS = frozenset({"+", "-", "*", "/", "%"})


def evaluate_binary(
    operator: str,
    left: Any,
    right: Callable[[], Any],
    *,
    strict_arithmetic: bool = False,
) -> Any:
    """
    Evaluates a binary operator.

    Args:
        operator: Operator text
        left: Already evaluated left operand
        right: Thunk producing the right operand (not called on short circuit)
        strict_arithmetic: Raise instead of yielding 0 on division by zero

    Raises:
        EvaluationError: Strict arithmetic failure
        ValueError: Unknown operator
    """
    if operator in LOGICAL_OPERATORS:
        return evaluate_logical(operator, left, right)
    if operator in COMPARISON_OPERATORS:
        return evaluate_comparison(operator, left, right())
    if operator in ARITHMETIC_OPERATORS:
        return evaluate_arithmetic(operator, left, right(), strict=strict_arithmetic)
    raise ValueError(f"Unknown operator: {operator}")


__all__ = [
    "UNDEFINED",
    "SafeString",
    "is_missing",
    "to_text",
    "truthy",
    "to_number",
    "evaluate_comparison",
    "evaluate_logical",
    "evaluate_arithmetic",
    "evaluate_binary",
]
