"""Human tasks created by approval nodes."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from flowforge.engine.definitions.models import ApprovalConfig, Definition, Node
from flowforge.engine.errors import EvaluationError, InvalidStateError, NotFoundError
from flowforge.engine.expressions import EvaluationContext, compile_expression
from flowforge.engine.persistence.repository import InstanceRepository, TaskRepository

from .events import EventBus, WorkflowEvent
from .locks import InstanceLocks
from .models import ActiveNode, Instance, InstanceStatus, NodeState, Task, TaskStatus

if TYPE_CHECKING:
    from flowforge.engine.definitions.store import DefinitionStore

    from .state_machine import InstanceStateMachine

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


def resolve_assignees(
    config: ApprovalConfig, instance: Instance, *, now: datetime
) -> tuple[list[str], str]:
    """Return ``(assignees, assignee_type)`` for an approval node.

    An expression assignee may produce one id or a list of ids; a list fans the
    approval out into one task per assignee.
    """

    if config.assignee_type != "expression":
        return [config.assignee], config.assignee_type

    ctx = EvaluationContext(
        variables=instance.variables,
        outcome=instance.last_outcome,
        trigger=instance.trigger,
        now=now,
    )
    value = compile_expression(config.assignee).evaluate(ctx)
    if isinstance(value, (list, tuple)):
        assignees = [str(v) for v in value if v is not None and str(v).strip()]
    elif isinstance(value, str) and value.strip():
        assignees = [value]
    else:
        raise EvaluationError(f"Assignee expression {config.assignee!r} yielded {value!r}")
    if not assignees:
        raise EvaluationError(f"Assignee expression {config.assignee!r} yielded no assignees")
    return list(dict.fromkeys(assignees)), "user"


def build_approval_tasks(
    instance: Instance, definition: Definition, node: Node, token: ActiveNode, *, now: datetime
) -> list[Task]:
    """Create (unsaved) PENDING tasks for an approval token."""

    config = node.config
    if not isinstance(config, ApprovalConfig):
        raise InvalidStateError(f"Node {node.id!r} is not an approval node")

    assignees, assignee_type = resolve_assignees(config, instance, now=now)
    due_at = now + timedelta(days=config.timeout_days) if config.timeout_days else None

    tasks: list[Task] = []
    for assignee in assignees:
        task = Task(
            id=str(uuid.uuid4()),
            instance_id=instance.id,
            definition_id=definition.id,
            node_id=node.id,
            token_id=token.token_id,
            name=config.title or node.name or node.id,
            description=config.description,
            assignee=assignee,
            assignee_type=assignee_type,  # type: ignore[arg-type]
            priority=config.priority,
            allow_delegation=config.allow_delegation,
            created_at=now,
            due_at=due_at,
        )
        task.record("created", at=now, assignee=assignee)
        tasks.append(task)
    return tasks


def approval_outcome(config: ApprovalConfig, tasks: Iterable[Task]) -> str | None:
    """The outcome that resolves an approval token, or ``None`` while waiting.

    A reject outcome resolves immediately. Otherwise the token resolves once
    ``required_approvals`` tasks have completed (capped by the number of
    tasks), carrying the outcome of the last completion.
    """

    live = [t for t in tasks if t.status != TaskStatus.CANCELLED]
    done = sorted(
        (t for t in live if t.status == TaskStatus.COMPLETED),
        key=lambda t: t.completed_at or _FAR_FUTURE,
    )
    for task in done:
        if task.outcome in config.reject_outcomes:
            return task.outcome
    needed = min(config.required_approvals, len(live))
    if done and len(done) >= needed:
        return done[-1].outcome or "completed"
    return None


def refresh_due_at(instance: Instance, open_tasks: Iterable[Task]) -> None:
    """``due_at`` is the earliest unmet deadline of the instance."""

    candidates = [t.due_at for t in open_tasks if t.due_at is not None and t.is_open]
    if instance.deadline_at is not None:
        candidates.append(instance.deadline_at)
    instance.due_at = min(candidates) if candidates else None


def _sort_key(task: Task) -> tuple[int, datetime, datetime]:
    return (
        0 if task.status == TaskStatus.PENDING else 1,
        task.due_at or _FAR_FUTURE,
        task.created_at,
    )


class TaskManager:
    """Claim, release, delegate and complete approval tasks.

    Completing the task that satisfies its node's approval arity resolves the
    suspended token and advances the instance.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        instances: InstanceRepository,
        definitions: DefinitionStore,
        state_machine: InstanceStateMachine,
        *,
        locks: InstanceLocks,
        events: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._tasks = tasks
        self._instances = instances
        self._definitions = definitions
        self._state_machine = state_machine
        self._locks = locks
        self._events = events or EventBus()
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id!r} not found")
        return task

    def list(
        self,
        *,
        assignee: str | None = None,
        status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
        instance_id: str | None = None,
        definition_id: str | None = None,
    ) -> list[Task]:
        """Pending tasks first, then by due date (undated last)."""

        if status is None:
            statuses = None
        elif isinstance(status, (str, TaskStatus)):
            statuses = [TaskStatus(status)]
        else:
            statuses = [TaskStatus(s) for s in status]
        tasks = [
            t
            for t in self._tasks.list(instance_id=instance_id, statuses=statuses)
            if (assignee is None or t.assignee == assignee)
            and (definition_id is None or t.definition_id == definition_id)
        ]
        return sorted(tasks, key=_sort_key)

    def claim(self, task_id: str, user_id: str) -> Task:
        def mutate(task: Task, now: datetime) -> None:
            if task.status != TaskStatus.PENDING:
                raise InvalidStateError(f"Task {task.id!r} is {task.status.value}, not pending")
            task.status = TaskStatus.CLAIMED
            task.claimed_by = user_id
            task.claimed_at = now
            task.record("claimed", user_id=user_id, at=now)

        return self._mutate(task_id, mutate, "task.claimed")

    def release(self, task_id: str, user_id: str) -> Task:
        def mutate(task: Task, now: datetime) -> None:
            if task.status != TaskStatus.CLAIMED:
                raise InvalidStateError(f"Task {task.id!r} is {task.status.value}, not claimed")
            if task.claimed_by != user_id:
                raise InvalidStateError(f"Task {task.id!r} is claimed by another user")
            task.status = TaskStatus.PENDING
            task.claimed_by = None
            task.claimed_at = None
            task.record("released", user_id=user_id, at=now)

        return self._mutate(task_id, mutate, "task.released")

    def delegate(self, task_id: str, user_id: str, to_user_id: str) -> Task:
        def mutate(task: Task, now: datetime) -> None:
            if not task.is_open:
                raise InvalidStateError(f"Task {task.id!r} is {task.status.value}")
            if not task.allow_delegation:
                raise InvalidStateError(f"Task {task.id!r} cannot be delegated")
            if not to_user_id.strip():
                raise InvalidStateError("Delegate target is required")
            previous = task.assignee
            task.assignee = to_user_id
            task.assignee_type = "user"
            task.status = TaskStatus.PENDING
            task.claimed_by = None
            task.claimed_at = None
            task.record(
                "delegated", user_id=user_id, at=now, from_user=previous, to_user=to_user_id
            )

        return self._mutate(task_id, mutate, "task.delegated")

    def complete(
        self,
        task_id: str,
        user_id: str,
        outcome: str,
        data: Mapping[str, Any] | None = None,
        comments: str | None = None,
    ) -> Task:
        task = self.get(task_id)
        resolved = False
        with self._locks.hold(task.instance_id):
            task = self.get(task_id)
            if not task.is_open:
                raise InvalidStateError(f"Task {task.id!r} is {task.status.value}")
            if task.status == TaskStatus.CLAIMED and task.claimed_by != user_id:
                raise InvalidStateError(f"Task {task.id!r} is claimed by another user")

            instance = self._instances.get(task.instance_id)
            if instance is None:
                raise NotFoundError(f"Instance {task.instance_id!r} not found")
            if instance.status not in (InstanceStatus.RUNNING, InstanceStatus.PAUSED):
                raise InvalidStateError(f"Instance {instance.id!r} is {instance.status.value}")

            now = self._clock()
            task.status = TaskStatus.COMPLETED
            task.outcome = outcome
            task.response_data = dict(data or {})
            task.comments = comments
            task.completed_by = user_id
            task.completed_at = now
            task.record("completed", user_id=user_id, at=now, outcome=outcome)

            instance.variables.update(task.response_data)
            instance.record(
                "task.completed",
                node_id=task.node_id,
                actor=user_id,
                at=now,
                task_id=task.id,
                outcome=outcome,
            )

            by_id = {t.id: t for t in self._tasks.list(instance_id=instance.id)}
            by_id[task.id] = task
            siblings = [t for t in by_id.values() if t.token_id == task.token_id]
            changed = [task]
            token = instance.token(task.token_id)
            definition = self._definitions.get(instance.definition_id, instance.definition_version)
            node = definition.node(task.node_id)
            if (
                token is not None
                and token.state == NodeState.AWAITING_TASK
                and node is not None
                and isinstance(node.config, ApprovalConfig)
            ):
                result = approval_outcome(node.config, siblings)
                if result is not None:
                    token.state = NodeState.RESOLVED
                    token.outcome = result
                    instance.last_outcome = result
                    resolved = True
                    for sibling in siblings:
                        if sibling.id != task.id and sibling.is_open:
                            sibling.status = TaskStatus.CANCELLED
                            sibling.record("cancelled", at=now, reason="approval resolved")
                            changed.append(sibling)

            refresh_due_at(instance, by_id.values())
            self._tasks.save_many(changed)
            self._instances.save(instance)

            logger.info(
                "Task completed",
                extra={
                    "task_id": task.id,
                    "instance_id": instance.id,
                    "node_id": task.node_id,
                    "outcome": outcome,
                },
            )
            self._emit("task.completed", task)

            if resolved and instance.status == InstanceStatus.RUNNING:
                self._state_machine.advance(instance.id)
        return self.get(task_id)

    def _mutate(
        self, task_id: str, mutate: Callable[[Task, datetime], None], event_type: str
    ) -> Task:
        task = self.get(task_id)
        with self._locks.hold(task.instance_id):
            task = self.get(task_id)
            mutate(task, self._clock())
            self._tasks.save(task)
        logger.info(
            "Task %s", task.history[-1].action, extra={"task_id": task.id, "instance_id": task.instance_id}
        )
        self._emit(event_type, task)
        return task

    def _emit(self, event_type: str, task: Task) -> None:
        self._events.publish(
            WorkflowEvent(
                type=event_type,
                instance_id=task.instance_id,
                payload={
                    "task_id": task.id,
                    "node_id": task.node_id,
                    "assignee": task.assignee,
                    "status": task.status.value,
                },
            )
        )
