"""Tests for approval task handling."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from conftest import END, START, FakeClock, approval, edge

from flowforge.engine.definitions import ApprovalConfig, Definition
from flowforge.engine.errors import EvaluationError, InvalidStateError, NotFoundError
from flowforge.engine.service import WorkflowService
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task, TaskStatus
from flowforge.engine.workflow.tasks import approval_outcome, resolve_assignees

Deploy = Callable[..., Definition]


@pytest.fixture
def single_task(service: WorkflowService, deploy: Deploy) -> Task:
    deploy(
        [START, approval("review", timeout_days=2), END],
        [edge("start", "review"), edge("review", "end")],
    )
    instance = service.start_instance("proc")
    [task] = service.instance_tasks(instance.id)
    return task


def test_task_fields_follow_node_config(single_task: Task, clock: FakeClock) -> None:
    assert single_task.name == "review"
    assert single_task.node_id == "review"
    assert single_task.due_at == clock.now.replace(day=3)
    assert [h.action for h in single_task.history] == ["created"]


def test_instance_due_at_tracks_open_tasks(service: WorkflowService, single_task: Task) -> None:
    instance = service.get_instance(single_task.instance_id)

    assert instance.due_at == single_task.due_at


def test_claim_and_release(service: WorkflowService, single_task: Task) -> None:
    claimed = service.claim_task(single_task.id, "alice")

    assert claimed.status == TaskStatus.CLAIMED
    assert claimed.claimed_by == "alice"
    with pytest.raises(InvalidStateError):
        service.claim_task(single_task.id, "bob")
    with pytest.raises(InvalidStateError):
        service.release_task(single_task.id, "bob")

    released = service.release_task(single_task.id, "alice")
    assert released.status == TaskStatus.PENDING
    assert released.claimed_by is None
    assert [h.action for h in released.history] == ["created", "claimed", "released"]


def test_claimed_task_only_completes_for_claimant(
    service: WorkflowService, single_task: Task
) -> None:
    service.claim_task(single_task.id, "alice")

    with pytest.raises(InvalidStateError):
        service.complete_task(single_task.id, "bob", "approved")

    done = service.complete_task(single_task.id, "alice", "approved", comments="fine")
    assert done.status == TaskStatus.COMPLETED
    assert done.comments == "fine"
    assert done.completed_by == "alice"


def test_completed_task_cannot_be_completed_again(
    service: WorkflowService, single_task: Task
) -> None:
    service.complete_task(single_task.id, "alice", "approved")

    with pytest.raises(InvalidStateError):
        service.complete_task(single_task.id, "alice", "approved")
    with pytest.raises(InvalidStateError):
        service.claim_task(single_task.id, "alice")


def test_delegate_reassigns_and_resets_claim(service: WorkflowService, single_task: Task) -> None:
    service.claim_task(single_task.id, "alice")

    delegated = service.delegate_task(single_task.id, "alice", "carol")

    assert delegated.assignee == "carol"
    assert delegated.status == TaskStatus.PENDING
    assert delegated.claimed_by is None
    assert delegated.history[-1].data == {"from_user": "alice", "to_user": "carol"}
    assert [t.id for t in service.list_tasks(assignee="carol")] == [single_task.id]


def test_delegation_can_be_disabled(service: WorkflowService, deploy: Deploy) -> None:
    deploy(
        [START, approval("review", allow_delegation=False), END],
        [edge("start", "review"), edge("review", "end")],
    )
    instance = service.start_instance("proc")
    [task] = service.instance_tasks(instance.id)

    with pytest.raises(InvalidStateError, match="cannot be delegated"):
        service.delegate_task(task.id, "alice", "carol")

    assert service.get_task(task.id).assignee == "alice"


def test_unknown_task_raises_not_found(service: WorkflowService) -> None:
    with pytest.raises(NotFoundError):
        service.get_task("missing")


def test_tasks_of_cancelled_instance_cannot_complete(
    service: WorkflowService, single_task: Task
) -> None:
    service.cancel_instance(single_task.instance_id, "ops")

    with pytest.raises(InvalidStateError):
        service.complete_task(single_task.id, "alice", "approved")


def test_expression_assignees_fan_out_with_arity(
    service: WorkflowService, deploy: Deploy
) -> None:
    deploy(
        [
            START,
            approval(
                "board", "approvers", assignee_type="expression", required_approvals=2
            ),
            END,
        ],
        [edge("start", "board"), edge("board", "end")],
    )
    instance = service.start_instance("proc", {"approvers": ["ann", "ben", "ann", "cy"]})
    tasks = {t.assignee: t for t in service.instance_tasks(instance.id)}
    assert set(tasks) == {"ann", "ben", "cy"}

    service.complete_task(tasks["ann"].id, "ann", "approved")
    assert service.get_instance(instance.id).status == InstanceStatus.RUNNING

    service.complete_task(tasks["cy"].id, "cy", "approved")

    assert service.get_instance(instance.id).status == InstanceStatus.COMPLETED
    assert service.get_task(tasks["ben"].id).status == TaskStatus.CANCELLED


def test_reject_outcome_resolves_immediately(service: WorkflowService, deploy: Deploy) -> None:
    deploy(
        [
            START,
            approval("board", "approvers", assignee_type="expression", required_approvals=2),
            {"id": "decide", "type": "decision"},
            {"id": "notify", "type": "email", "config": {"template": "rejected", "to": "x@y"}},
            END,
        ],
        [
            edge("start", "board"),
            edge("board", "decide"),
            edge("decide", "notify", condition="outcome == 'rejected'"),
            edge("decide", "end"),
            edge("notify", "end"),
        ],
    )
    instance = service.start_instance("proc", {"approvers": ["ann", "ben"]})
    tasks = {t.assignee: t for t in service.instance_tasks(instance.id)}

    service.complete_task(tasks["ann"].id, "ann", "rejected")

    done = service.get_instance(instance.id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.last_outcome == "rejected"
    assert "notify" in [h.node_id for h in done.history if h.event == "node.entered"]
    assert service.get_task(tasks["ben"].id).status == TaskStatus.CANCELLED


def test_empty_expression_assignee_fails_instance(
    service: WorkflowService, deploy: Deploy
) -> None:
    deploy(
        [START, approval("board", "approvers", assignee_type="expression"), END],
        [edge("start", "board"), edge("board", "end")],
    )

    instance = service.start_instance("proc", {"approvers": []})

    assert instance.status == InstanceStatus.FAILED
    assert instance.failure is not None
    assert instance.failure.code == "evaluation_error"


def test_list_orders_pending_first_then_by_due_date(
    service: WorkflowService, deploy: Deploy
) -> None:
    deploy(
        [
            START,
            approval("slow", "dan", timeout_days=5),
            approval("fast", "dan", timeout_days=1),
            approval("none", "dan"),
            END,
        ],
        [
            edge("start", "slow"),
            edge("start", "fast"),
            edge("start", "none"),
            edge("slow", "end"),
            edge("fast", "end"),
            edge("none", "end"),
        ],
    )
    instance = service.start_instance("proc")
    fast = next(t for t in service.instance_tasks(instance.id) if t.node_id == "fast")
    service.claim_task(fast.id, "dan")

    ordered = [t.node_id for t in service.list_tasks(assignee="dan")]

    assert ordered == ["slow", "none", "fast"]
    assert [t.node_id for t in service.list_tasks(status="claimed")] == ["fast"]


def _task(**fields: Any) -> Task:
    defaults: dict[str, Any] = {
        "id": "t",
        "instance_id": "i",
        "definition_id": "d",
        "node_id": "n",
        "token_id": "tok",
        "name": "n",
        "assignee": "a",
    }
    return Task(**{**defaults, **fields})


def test_approval_outcome_waits_for_required_count() -> None:
    config = ApprovalConfig(assignee="x", required_approvals=2)
    one_done = [
        _task(id="1", status=TaskStatus.COMPLETED, outcome="approved"),
        _task(id="2"),
    ]

    assert approval_outcome(config, one_done) is None
    assert approval_outcome(config, [*one_done[:1], _task(id="2", status=TaskStatus.CANCELLED)]) == (
        "approved"
    )


def test_resolve_assignees_rejects_non_text() -> None:
    instance = Instance(id="i", definition_id="d", definition_version=1, variables={"who": 42})
    config = ApprovalConfig(assignee="who", assignee_type="expression")

    with pytest.raises(EvaluationError):
        resolve_assignees(config, instance, now=datetime.now(tz=UTC))
