"""Persisted runtime records: instances, their active tokens, and tasks."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class InstanceStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


class NodeState(str, Enum):
    """Execution state of one active token.

    RESOLVED means the node's side effect is finished (task completed,
    connector answered) and only edge routing remains.
    """

    DISPATCHABLE = "dispatchable"
    AWAITING_TASK = "awaiting_task"
    AWAITING_CONNECTOR = "awaiting_connector"
    RESOLVED = "resolved"


RUNNABLE_STATES: frozenset[NodeState] = frozenset({NodeState.DISPATCHABLE, NodeState.RESOLVED})


class ActiveNode(BaseModel):
    """One in-flight branch positioned at a node.

    The same node may hold several tokens at once: converging edges activate
    their target independently.
    """

    token_id: str
    node_id: str
    state: NodeState = NodeState.DISPATCHABLE
    outcome: str | None = None
    task_ids: list[str] = Field(default_factory=list)
    call_id: str | None = None
    activated_at: datetime = Field(default_factory=utc_now)


class FailureInfo(BaseModel):
    reason: str
    code: str
    node_id: str | None = None
    at: datetime = Field(default_factory=utc_now)


class HistoryEntry(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    event: str
    node_id: str | None = None
    actor: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class Instance(BaseModel):
    id: str
    definition_id: str
    definition_version: int
    status: InstanceStatus = InstanceStatus.RUNNING

    active_nodes: list[ActiveNode] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    trigger: dict[str, Any] = Field(default_factory=dict)
    trigger_type: str = "manual"
    output: dict[str, Any] = Field(default_factory=dict)
    last_outcome: str | None = None

    started_by: str = "system"
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    deadline_at: datetime | None = None
    due_at: datetime | None = None

    failure: FailureInfo | None = None
    cancelled_by: str | None = None

    breached: bool = False
    escalation_level: int = 0
    escalated_at: datetime | None = None

    history: list[HistoryEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def token(self, token_id: str) -> ActiveNode | None:
        for token in self.active_nodes:
            if token.token_id == token_id:
                return token
        return None

    def record(
        self,
        event: str,
        *,
        node_id: str | None = None,
        actor: str | None = None,
        at: datetime | None = None,
        **detail: Any,
    ) -> None:
        self.history.append(
            HistoryEntry(at=at or utc_now(), event=event, node_id=node_id, actor=actor, detail=detail)
        )


class TaskStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.CLAIMED})


class TaskHistoryEntry(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    action: Literal[
        "created", "claimed", "released", "completed", "delegated", "escalated", "cancelled"
    ]
    user_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    id: str
    instance_id: str
    definition_id: str
    node_id: str
    token_id: str
    name: str

    description: str | None = None
    assignee: str
    assignee_type: Literal["user", "role"] = "user"
    status: TaskStatus = TaskStatus.PENDING
    priority: Literal["low", "normal", "high", "critical"] = "normal"
    allow_delegation: bool = True

    outcome: str | None = None
    response_data: dict[str, Any] = Field(default_factory=dict)
    comments: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    due_at: datetime | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None

    breached: bool = False
    escalation_level: int = 0
    escalated_at: datetime | None = None

    history: list[TaskHistoryEntry] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    def record(
        self, action: str, *, user_id: str | None = None, at: datetime | None = None, **data: Any
    ) -> None:
        self.history.append(
            TaskHistoryEntry(
                at=at or utc_now(),
                action=action,  # type: ignore[arg-type]
                user_id=user_id,
                data=data,
            )
        )
