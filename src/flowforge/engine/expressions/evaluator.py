"""Evaluate parsed expressions against an explicit context.

The evaluator has no access to anything but the :class:`EvaluationContext` it
is handed: no builtins, no attribute access on Python objects, no I/O.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from flowforge.engine.errors import EvaluationError

from .functions import FUNCTIONS, is_number, power, to_datetime
from .parser import (
    ArrayLiteral,
    Binary,
    Call,
    Conditional,
    Index,
    Literal,
    Logical,
    Member,
    Name,
    Node,
    Unary,
    parse,
    referenced_roots,
)

RESERVED_ROOTS: frozenset[str] = frozenset({"variables", "outcome", "trigger", "decision"})


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Everything an expression may read.

    ``variables`` are also reachable as bare identifiers (``amount`` is
    ``variables.amount``).
    """

    variables: Mapping[str, Any] = field(default_factory=dict)
    outcome: str | None = None
    trigger: Mapping[str, Any] = field(default_factory=dict)
    decision: Any = None
    now: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(frozen=True, slots=True)
class Expression:
    """A parsed expression, ready to be evaluated many times."""

    source: str
    tree: Node

    @property
    def roots(self) -> set[str]:
        return referenced_roots(self.tree)

    def evaluate(self, context: EvaluationContext) -> Any:
        return _eval(self.tree, context)

    def test(self, context: EvaluationContext) -> bool:
        return truthy(self.evaluate(context))


@lru_cache(maxsize=2048)
def compile_expression(source: str) -> Expression:
    """Parse once; repeated conditions hit the cache."""

    return Expression(source=source, tree=parse(source))


def evaluate(expression: str, context: EvaluationContext) -> Any:
    return compile_expression(expression).evaluate(context)


def truthy(value: Any) -> bool:
    return bool(value)


def _resolve_name(name: str, ctx: EvaluationContext) -> Any:
    if name == "variables":
        return ctx.variables
    if name == "trigger":
        return ctx.trigger
    if name == "outcome":
        return ctx.outcome
    if name == "decision":
        return ctx.decision
    if name in ctx.variables:
        return ctx.variables[name]
    raise EvaluationError(f"Unknown identifier {name!r}")


def _member(obj: Any, attr: str) -> Any:
    if isinstance(obj, Mapping):
        if attr not in obj:
            raise EvaluationError(f"Unknown identifier {attr!r}")
        return obj[attr]
    if isinstance(obj, (list, tuple, str)) and attr == "length":
        return len(obj)
    raise EvaluationError(f"Cannot read {attr!r} of {type(obj).__name__}")


def _index(obj: Any, index: Any) -> Any:
    if isinstance(obj, Mapping):
        key = index if isinstance(index, str) else str(index)
        if key not in obj:
            raise EvaluationError(f"Unknown identifier {key!r}")
        return obj[key]
    if isinstance(obj, (list, tuple, str)):
        if not is_number(index) or int(index) != index:
            raise EvaluationError("Array index must be an integer")
        try:
            return obj[int(index)]
        except IndexError as e:
            raise EvaluationError(f"Index {index} out of range") from e
    raise EvaluationError(f"Cannot index {type(obj).__name__}")


def _equal(left: Any, right: Any) -> bool:
    # true == 1 must not hold.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, datetime) and isinstance(right, str):
        return left == to_datetime(right)
    if isinstance(right, datetime) and isinstance(left, str):
        return to_datetime(left) == right
    return bool(left == right)


def _ordered(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, datetime) or isinstance(right, datetime):
        left, right = to_datetime(left), to_datetime(right)
    elif not (
        (is_number(left) and is_number(right))
        or (isinstance(left, str) and isinstance(right, str))
    ):
        raise EvaluationError(
            f"Cannot compare {type(left).__name__} {op} {type(right).__name__}"
        )
    if op == "<":
        return bool(left < right)
    if op == "<=":
        return bool(left <= right)
    if op == ">":
        return bool(left > right)
    return bool(left >= right)


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "+":
        if isinstance(left, str) and isinstance(right, str):
            return left + right
        if isinstance(left, list) and isinstance(right, list):
            return left + right
    if not (is_number(left) and is_number(right)):
        raise EvaluationError(
            f"Type mismatch: {type(left).__name__} {op} {type(right).__name__}"
        )
    if op in {"/", "%"} and right == 0:
        raise EvaluationError("Division by zero")
    if op == "**":
        return power(left, right)
    try:
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            return left / right
        if op == "%":
            return left % right
    except ArithmeticError as e:
        raise EvaluationError(f"Arithmetic error: {left!r} {op} {right!r}: {e}") from e
    raise EvaluationError(f"Unsupported operator {op!r}")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _eval(node: Node, ctx: EvaluationContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return _resolve_name(node.name, ctx)
    if isinstance(node, Member):
        return _member(_eval(node.obj, ctx), node.attr)
    if isinstance(node, Index):
        return _index(_eval(node.obj, ctx), _eval(node.index, ctx))
    if isinstance(node, ArrayLiteral):
        return [_eval(item, ctx) for item in node.items]
    if isinstance(node, Unary):
        value = _eval(node.operand, ctx)
        if node.op == "!":
            return not truthy(value)
        if not is_number(value):
            raise EvaluationError(f"Type mismatch: unary {node.op} on {type(value).__name__}")
        return -value if node.op == "-" else value
    if isinstance(node, Logical):
        left = _eval(node.left, ctx)
        if node.op == "&&":
            return _eval(node.right, ctx) if truthy(left) else left
        return left if truthy(left) else _eval(node.right, ctx)
    if isinstance(node, Conditional):
        branch = node.then if truthy(_eval(node.test, ctx)) else node.otherwise
        return _eval(branch, ctx)
    if isinstance(node, Binary):
        left = _eval(node.left, ctx)
        right = _eval(node.right, ctx)
        if node.op in {"==", "==="}:
            return _equal(left, right)
        if node.op in {"!=", "!=="}:
            return not _equal(left, right)
        if node.op in {"<", "<=", ">", ">="}:
            return _ordered(node.op, left, right)
        if node.op == "&":
            return _text(left) + _text(right)
        return _arithmetic(node.op, left, right)
    if isinstance(node, Call):
        return _call(node, ctx)
    raise EvaluationError(f"Unsupported expression node {type(node).__name__}")


def _call(node: Call, ctx: EvaluationContext) -> Any:
    if node.name == "IF":
        test = truthy(_eval(node.args[0], ctx))
        if test:
            return _eval(node.args[1], ctx)
        return _eval(node.args[2], ctx) if len(node.args) > 2 else None

    entry = FUNCTIONS[node.name]
    assert entry.impl is not None
    args = [_eval(arg, ctx) for arg in node.args]
    try:
        if entry.needs_clock:
            return entry.impl(ctx.now, *args)
        return entry.impl(*args)
    except EvaluationError:
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise EvaluationError(f"{node.name}: {e}") from e
