"""Process definition models.

Authoring happens on a mutable :class:`DefinitionDraft`. Publishing freezes the
draft into an immutable, versioned :class:`Definition` snapshot that running
instances pin.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class NodeType(str, Enum):
    START = "start"
    ACTION = "action"
    DECISION = "decision"
    APPROVAL = "approval"
    EMAIL = "email"
    END = "end"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class RetryPolicy(BaseModel):
    """Bounded retries for connector calls."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff: Literal["fixed", "linear", "exponential"] = "exponential"
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60000, ge=0)


# -- node configuration ------------------------------------------------------


class StartConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["start"] = "start"


class EndConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["end"] = "end"
    # output name -> expression, copied into the instance output
    output_mapping: dict[str, str] = Field(default_factory=dict)


class ActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["action"] = "action"
    connector: str = ""
    operation: str = ""
    # connector input name -> expression
    inputs: dict[str, str] = Field(default_factory=dict)
    # variable name -> connector output key; empty merges every output
    outputs: dict[str, str] = Field(default_factory=dict)
    mode: Literal["sync", "async"] = "sync"
    retry: RetryPolicy | None = None
    on_error: Literal["stop", "continue"] | None = None


class DecisionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["decision"] = "decision"
    condition: str | None = None
    decision_table_id: str | None = None
    # variables passed to the decision table; empty passes all variables
    inputs: list[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["approval"] = "approval"
    title: str = ""
    description: str | None = None
    assignee: str = ""
    assignee_type: Literal["user", "role", "expression"] = "user"
    required_approvals: int = Field(default=1, ge=1)
    timeout_days: float | None = Field(default=None, ge=0)
    priority: Literal["low", "normal", "high", "critical"] = "normal"
    reject_outcomes: list[str] = Field(default_factory=lambda: ["rejected"])
    allow_delegation: bool = True


class EmailConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["email"] = "email"
    template: str = ""
    to: str | None = None
    to_expression: str | None = None
    fail_on_error: bool = False


NodeConfig = Annotated[
    Union[StartConfig, EndConfig, ActionConfig, DecisionConfig, ApprovalConfig, EmailConfig],
    Field(discriminator="type"),
]


class Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType
    name: str = ""
    description: str | None = None
    config: NodeConfig
    # Layout coordinates owned by the designer UI; never read by the engine.
    position: dict[str, float] | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        node_type = data.get("type")
        if isinstance(node_type, Enum):
            node_type = node_type.value
        config = data.get("config")
        if config is None:
            return {**data, "config": {"type": node_type}}
        if isinstance(config, dict) and "type" not in config:
            return {**data, "config": {**config, "type": node_type}}
        return data

    @model_validator(mode="after")
    def _config_matches_type(self) -> Node:
        if self.config.type != self.type.value:
            raise ValueError(
                f"Node {self.id!r}: config type {self.config.type!r} does not match {self.type.value!r}"
            )
        return self


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    condition: str | None = None
    label: str | None = None


class Trigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["manual", "form", "webhook", "schedule", "event"] = "manual"
    name: str = ""
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class Variable(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["string", "number", "boolean", "date", "array", "object", "any"] = "any"
    default: Any = None
    required: bool = False
    description: str | None = None


class EscalationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    notify_role: str | None = None
    notify_users: list[str] = Field(default_factory=list)
    template: str | None = None
    # Re-escalate an item that stays overdue; defaults to the sweep interval.
    repeat_after_minutes: float | None = Field(default=None, gt=0)
    max_escalations: int | None = Field(default=None, ge=1)


class SlaSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    escalation_policy: EscalationPolicy = Field(default_factory=EscalationPolicy)
    instance_due_hours: float | None = Field(default=None, gt=0)


class DefinitionSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    retry: RetryPolicy | None = None
    error_handling: Literal["stop", "continue"] = "stop"
    sla: SlaSettings = Field(default_factory=SlaSettings)


class DefinitionDraft(BaseModel):
    """The editable authoring copy of a definition."""

    id: str
    name: str
    description: str | None = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)
    variables: list[Variable] = Field(default_factory=list)
    settings: DefinitionSettings = Field(default_factory=DefinitionSettings)

    created_by: str = "system"
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    latest_version: int = 0


class Definition(BaseModel):
    """An immutable, published version of a process graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None
    version: int
    status: DefinitionStatus
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    triggers: tuple[Trigger, ...] = ()
    variables: tuple[Variable, ...] = ()
    settings: DefinitionSettings = Field(default_factory=DefinitionSettings)

    published_at: datetime = Field(default_factory=_utc_now)
    published_by: str = "system"

    def node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def start_node(self) -> Node:
        return next(n for n in self.nodes if n.type == NodeType.START)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges in declaration order."""

        return [edge for edge in self.edges if edge.source == node_id]
