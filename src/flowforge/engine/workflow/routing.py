"""Decision routing and outgoing-edge selection."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from flowforge.engine.collaborators.decision_tables import DecisionTableService
from flowforge.engine.definitions.models import Edge, Node
from flowforge.engine.errors import EvaluationError, RoutingError
from flowforge.engine.expressions import EvaluationContext, compile_expression

logger = logging.getLogger(__name__)

DEFAULT_LABELS: frozenset[str] = frozenset({"", "default", "else", "otherwise"})
_TRUE_LABELS: frozenset[str] = frozenset({"true", "yes"})
_FALSE_LABELS: frozenset[str] = frozenset({"false", "no"})


class DecisionRouter:
    """Resolves decision tables through the external service.

    Any failure of the service is logged and reported as "no match"; it is
    up to edge selection to fall back to a default branch or fail.
    """

    def __init__(self, service: DecisionTableService | None = None) -> None:
        self._service = service

    def route(self, table_id: str, inputs: Mapping[str, Any]) -> str | None:
        if self._service is None:
            logger.warning("No decision table service configured", extra={"table_id": table_id})
            return None
        try:
            outcome = self._service.resolve(table_id, inputs)
        except Exception:
            logger.exception("Decision table failed", extra={"table_id": table_id})
            return None
        return None if outcome is None else str(outcome)


def condition_holds(edge: Edge, ctx: EvaluationContext, *, node_id: str | None = None) -> bool:
    """Evaluate an edge condition; evaluator errors count as false."""

    if not edge.condition or not edge.condition.strip():
        return True
    try:
        return compile_expression(edge.condition).test(ctx)
    except EvaluationError as e:
        logger.warning(
            "Edge condition failed, treating as no match: %s",
            e,
            extra={"node_id": node_id, "edge_id": edge.id, "condition": edge.condition},
        )
        return False


def _label_matches(label: str | None, decision: Any) -> bool:
    if label is None or decision is None:
        return False
    normalized = label.strip().lower()
    if decision is True:
        return normalized in _TRUE_LABELS
    if decision is False:
        return normalized in _FALSE_LABELS
    return normalized == str(decision).strip().lower()


def _is_default(edge: Edge) -> bool:
    if edge.condition and edge.condition.strip():
        return False
    return (edge.label or "").strip().lower() in DEFAULT_LABELS


def select_decision_edge(node: Node, edges: Sequence[Edge], ctx: EvaluationContext) -> Edge:
    """Pick exactly one edge out of a decision node.

    Edges are tried in declaration order: a conditional edge is taken when its
    condition is true, an unconditional one when its label names the decision
    value. Otherwise the first unconditional edge that is unlabelled or labelled
    as a default (``else``, ``otherwise``...) is taken. A failed condition or a
    decision table without a match never falls through to a labelled branch.
    """

    for edge in edges:
        if edge.condition and edge.condition.strip():
            if condition_holds(edge, ctx, node_id=node.id):
                return edge
        elif _label_matches(edge.label, ctx.decision):
            return edge

    for edge in edges:
        if _is_default(edge):
            return edge

    raise RoutingError(
        f"No outgoing edge of decision node {node.id!r} matched (decision={ctx.decision!r})",
        node_id=node.id,
    )


def select_edges(node: Node, edges: Sequence[Edge], ctx: EvaluationContext) -> list[Edge]:
    """Every unconditional edge plus every conditional edge that holds."""

    return [edge for edge in edges if condition_holds(edge, ctx, node_id=node.id)]
