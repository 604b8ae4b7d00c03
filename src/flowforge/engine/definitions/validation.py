"""Structural validation of process graphs.

Validation never stops at the first problem: every violation is collected so an
author can fix them all in one pass.
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Iterable, Sequence

from flowforge.engine.errors import EvaluationError
from flowforge.engine.expressions import compile_expression

from .models import (
    ActionConfig,
    ApprovalConfig,
    DecisionConfig,
    Edge,
    EmailConfig,
    EndConfig,
    Node,
    NodeType,
    Variable,
)


def _label(node: Node) -> str:
    return f"{node.type.value} node {node.id!r}"


def _check_expression(source: str | None, where: str, violations: list[str]) -> None:
    if source is None or not source.strip():
        return
    try:
        compile_expression(source)
    except EvaluationError as e:
        violations.append(f"{where}: invalid expression {source!r} ({e})")


def _reachable(start_id: str, edges: Iterable[Edge]) -> set[str]:
    adjacency: dict[str, list[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    seen = {start_id}
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _node_config_violations(node: Node, outgoing: list[Edge]) -> list[str]:
    violations: list[str] = []
    where = _label(node)
    config = node.config

    if isinstance(config, DecisionConfig):
        has_conditional_edge = any(e.condition and e.condition.strip() for e in outgoing)
        if not (config.condition or config.decision_table_id or has_conditional_edge):
            violations.append(
                f"{where}: decision needs a condition, a decision table or conditional edges"
            )
        if config.condition and config.decision_table_id:
            violations.append(f"{where}: set either a condition or a decision table, not both")
        if not outgoing:
            violations.append(f"{where}: decision has no outgoing edges")
        _check_expression(config.condition, where, violations)

    elif isinstance(config, ApprovalConfig):
        if not config.assignee.strip():
            violations.append(f"{where}: approval has no assignee")
        elif config.assignee_type == "expression":
            _check_expression(config.assignee, f"{where} assignee", violations)

    elif isinstance(config, ActionConfig):
        if not config.connector.strip() or not config.operation.strip():
            violations.append(f"{where}: action needs a connector and an operation")
        for name, expression in config.inputs.items():
            _check_expression(expression, f"{where} input {name!r}", violations)

    elif isinstance(config, EmailConfig):
        if not config.template.strip():
            violations.append(f"{where}: email has no template")
        if not (config.to or config.to_expression):
            violations.append(f"{where}: email has no recipient")
        _check_expression(config.to_expression, f"{where} recipient", violations)

    elif isinstance(config, EndConfig):
        if outgoing:
            violations.append(f"{where}: end node has outgoing edges")
        for name, expression in config.output_mapping.items():
            _check_expression(expression, f"{where} output {name!r}", violations)

    return violations


def validate_graph(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    variables: Sequence[Variable] = (),
) -> list[str]:
    """Return every structural violation of the graph (empty when valid)."""

    violations: list[str] = []

    node_ids = Counter(node.id for node in nodes)
    for node_id, count in sorted(node_ids.items()):
        if count > 1:
            violations.append(f"Duplicate node id {node_id!r}")

    edge_ids = Counter(edge.id for edge in edges)
    for edge_id, count in sorted(edge_ids.items()):
        if count > 1:
            violations.append(f"Duplicate edge id {edge_id!r}")

    variable_names = Counter(v.name for v in variables)
    for name, count in sorted(variable_names.items()):
        if count > 1:
            violations.append(f"Duplicate variable {name!r}")

    starts = [node for node in nodes if node.type == NodeType.START]
    if not starts:
        violations.append("Definition must have a start node")
    elif len(starts) > 1:
        violations.append(f"Definition can only have one start node (found {len(starts)})")

    if not any(node.type == NodeType.END for node in nodes):
        violations.append("Definition must have at least one end node")

    valid_edges: list[Edge] = []
    for edge in edges:
        dangling = [end for end in (edge.source, edge.target) if end not in node_ids]
        for missing in dangling:
            violations.append(f"Edge {edge.id!r} references unknown node {missing!r}")
        if not dangling:
            valid_edges.append(edge)
        _check_expression(edge.condition, f"Edge {edge.id!r} condition", violations)

    if len(starts) == 1:
        reachable = _reachable(starts[0].id, valid_edges)
        for node in nodes:
            if node.id not in reachable:
                violations.append(f"{_label(node).capitalize()} is not reachable from start")

    for node in nodes:
        outgoing = [edge for edge in valid_edges if edge.source == node.id]
        violations.extend(_node_config_violations(node, outgoing))

    return violations
