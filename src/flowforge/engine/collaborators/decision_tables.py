"""Decision table resolution for decision nodes."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from flowforge.engine.errors import EvaluationError, NotFoundError
from flowforge.engine.expressions import EvaluationContext, compile_expression

logger = logging.getLogger(__name__)


class DecisionTableService(Protocol):
    def resolve(self, table_id: str, inputs: Mapping[str, Any]) -> str | None: ...


class DecisionRule(BaseModel):
    """One row of a table.

    ``when`` maps input names to expression cells. Inside a cell ``value`` is
    the input being tested and every input is reachable by name, so
    ``value >= 1000`` and ``amount >= 1000`` mean the same for the ``amount``
    column. An empty cell or ``-`` matches anything.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    when: dict[str, str] = Field(default_factory=dict)
    outcome: str
    priority: int = 0
    enabled: bool = True


class DecisionTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    hit_policy: Literal["FIRST", "UNIQUE", "PRIORITY", "ANY"] = "FIRST"
    rules: tuple[DecisionRule, ...] = ()
    default_outcome: str | None = None


def load_decision_tables(path: Path) -> list[DecisionTable]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = list(raw.values())
    return [DecisionTable.model_validate(item) for item in raw]


def _cell_matches(cell: str, name: str, inputs: Mapping[str, Any]) -> bool:
    if not cell.strip() or cell.strip() == "-":
        return True
    ctx = EvaluationContext(variables={**inputs, "value": inputs.get(name)})
    return compile_expression(cell).test(ctx)


def evaluate_table(table: DecisionTable, inputs: Mapping[str, Any]) -> str | None:
    """Apply the table's hit policy; ``None`` when nothing matches.

    Raises :class:`EvaluationError` for a broken cell or a violated UNIQUE/ANY
    policy.
    """

    matched = [
        rule
        for rule in table.rules
        if rule.enabled and all(_cell_matches(c, n, inputs) for n, c in rule.when.items())
    ]
    if not matched:
        return table.default_outcome

    if table.hit_policy == "UNIQUE" and len(matched) > 1:
        raise EvaluationError(
            f"Table {table.id!r}: UNIQUE hit policy violated by rules "
            + ", ".join(r.id for r in matched)
        )
    if table.hit_policy == "ANY" and len({r.outcome for r in matched}) > 1:
        raise EvaluationError(f"Table {table.id!r}: ANY hit policy matched different outcomes")
    if table.hit_policy == "PRIORITY":
        return max(matched, key=lambda r: r.priority).outcome
    return matched[0].outcome


class InMemoryDecisionTableService:
    def __init__(self, tables: Iterable[DecisionTable] = ()) -> None:
        self._tables = {t.id: t for t in tables}

    def add(self, table: DecisionTable) -> None:
        self._tables[table.id] = table

    def resolve(self, table_id: str, inputs: Mapping[str, Any]) -> str | None:
        table = self._tables.get(table_id)
        if table is None:
            raise NotFoundError(f"Decision table {table_id!r} not found")
        outcome = evaluate_table(table, inputs)
        logger.debug(
            "Decision table evaluated",
            extra={"table_id": table_id, "outcome": outcome},
        )
        return outcome
