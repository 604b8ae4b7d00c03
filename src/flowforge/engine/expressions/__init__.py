"""Sandboxed expression language for edge conditions and computed fields."""

from flowforge.engine.expressions.evaluator import (
    EvaluationContext,
    Expression,
    compile_expression,
    evaluate,
    truthy,
)
from flowforge.engine.expressions.functions import FUNCTIONS

__all__ = [
    "FUNCTIONS",
    "EvaluationContext",
    "Expression",
    "compile_expression",
    "evaluate",
    "truthy",
]
