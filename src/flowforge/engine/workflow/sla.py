"""SLA deadline checks and escalation.

Escalation never changes an item's status: it flags the item as breached,
bumps its escalation level and notifies whoever the definition's escalation
policy names.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from flowforge.engine.collaborators.notifier import Notifier
from flowforge.engine.definitions.models import Definition, EscalationPolicy
from flowforge.engine.definitions.store import DefinitionStore
from flowforge.engine.errors import NotFoundError
from flowforge.engine.persistence.repository import InstanceRepository, TaskRepository

from .events import EventBus, WorkflowEvent
from .locks import InstanceLocks
from .models import OPEN_TASK_STATUSES, InstanceStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class OverdueItem:
    kind: Literal["task", "instance"]
    id: str
    instance_id: str
    definition_id: str
    definition_version: int
    due_at: datetime
    escalation_level: int


class SlaMonitor:
    def __init__(
        self,
        tasks: TaskRepository,
        instances: InstanceRepository,
        definitions: DefinitionStore,
        notifier: Notifier,
        *,
        locks: InstanceLocks,
        events: EventBus | None = None,
        sweep_interval_seconds: float = 60.0,
        escalation_role: str = "admin",
        escalation_template: str = "sla-breach",
        clock: Clock | None = None,
    ) -> None:
        self._tasks = tasks
        self._instances = instances
        self._definitions = definitions
        self._notifier = notifier
        self._locks = locks
        self._events = events or EventBus()
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._escalation_role = escalation_role
        self._escalation_template = escalation_template
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def find_overdue(self, now: datetime | None = None) -> list[OverdueItem]:
        """Open tasks and live instances past their deadline that are due for escalation."""

        now = now or self._clock()
        policies: dict[tuple[str, int], EscalationPolicy] = {}

        def policy_for(definition_id: str, version: int) -> EscalationPolicy:
            key = (definition_id, version)
            if key not in policies:
                policies[key] = self._policy(self._definitions.get(definition_id, version))
            return policies[key]

        versions = {i.id: (i.definition_id, i.definition_version) for i in self._instances.list()}
        items: list[OverdueItem] = []

        for task in self._tasks.list(statuses=OPEN_TASK_STATUSES):
            if task.due_at is None or task.due_at > now or task.instance_id not in versions:
                continue
            definition_id, version = versions[task.instance_id]
            policy = policy_for(definition_id, version)
            if self._due_for_escalation(policy, task.escalation_level, task.escalated_at, now):
                items.append(
                    OverdueItem(
                        kind="task",
                        id=task.id,
                        instance_id=task.instance_id,
                        definition_id=definition_id,
                        definition_version=version,
                        due_at=task.due_at,
                        escalation_level=task.escalation_level,
                    )
                )

        live = self._instances.list(statuses=(InstanceStatus.RUNNING, InstanceStatus.PAUSED))
        for instance in live:
            if instance.deadline_at is None or instance.deadline_at > now:
                continue
            policy = policy_for(instance.definition_id, instance.definition_version)
            if self._due_for_escalation(
                policy, instance.escalation_level, instance.escalated_at, now
            ):
                items.append(
                    OverdueItem(
                        kind="instance",
                        id=instance.id,
                        instance_id=instance.id,
                        definition_id=instance.definition_id,
                        definition_version=instance.definition_version,
                        due_at=instance.deadline_at,
                        escalation_level=instance.escalation_level,
                    )
                )

        return sorted(items, key=lambda item: item.due_at)

    def escalate(self, item: OverdueItem, now: datetime | None = None) -> bool:
        """Escalate ``item``; ``False`` when it was closed or escalated meanwhile."""

        now = now or self._clock()
        policy = self._policy(self._definitions.get(item.definition_id, item.definition_version))
        with self._locks.hold(item.instance_id):
            instance = self._instances.get(item.instance_id)
            if instance is None:
                raise NotFoundError(f"Instance {item.instance_id!r} not found")

            if item.kind == "task":
                task = self._tasks.get(item.id)
                if task is None:
                    raise NotFoundError(f"Task {item.id!r} not found")
                if not task.is_open or not self._due_for_escalation(
                    policy, task.escalation_level, task.escalated_at, now
                ):
                    return False
                task.breached = True
                task.escalation_level += 1
                task.escalated_at = now
                task.record("escalated", at=now, level=task.escalation_level)
                level = task.escalation_level
                self._tasks.save(task)
                instance.breached = True
                instance.record(
                    "sla.task_breached", node_id=task.node_id, at=now, task_id=task.id, level=level
                )
            else:
                if instance.is_terminal or not self._due_for_escalation(
                    policy, instance.escalation_level, instance.escalated_at, now
                ):
                    return False
                instance.breached = True
                instance.escalation_level += 1
                instance.escalated_at = now
                level = instance.escalation_level
                instance.record("sla.breached", at=now, level=level)
            self._instances.save(instance)

        self._notify(item, policy, level, instance.variables)

        logger.warning(
            "SLA breached",
            extra={
                "instance_id": item.instance_id,
                "task_id": item.id if item.kind == "task" else None,
                "kind": item.kind,
                "level": level,
            },
        )
        self._events.publish(
            WorkflowEvent(
                type="sla.escalated",
                instance_id=item.instance_id,
                payload={
                    "kind": item.kind,
                    "id": item.id,
                    "level": level,
                    "due_at": item.due_at.isoformat(),
                    "notify_role": policy.notify_role or self._escalation_role,
                },
                at=now,
            )
        )
        return True

    def sweep(self, now: datetime | None = None) -> list[OverdueItem]:
        now = now or self._clock()
        items = [item for item in self.find_overdue(now) if self.escalate(item, now)]
        if items:
            logger.info("SLA sweep escalated %s item(s)", len(items))
        return items

    def _due_for_escalation(
        self,
        policy: EscalationPolicy,
        level: int,
        escalated_at: datetime | None,
        now: datetime,
    ) -> bool:
        if policy.max_escalations is not None and level >= policy.max_escalations:
            return False
        if escalated_at is None:
            return True
        repeat = (
            timedelta(minutes=policy.repeat_after_minutes)
            if policy.repeat_after_minutes
            else self._sweep_interval
        )
        return now - escalated_at >= repeat

    @staticmethod
    def _policy(definition: Definition) -> EscalationPolicy:
        return definition.settings.sla.escalation_policy

    def _notify(
        self, item: OverdueItem, policy: EscalationPolicy, level: int, variables: dict[str, object]
    ) -> None:
        template = policy.template or self._escalation_template
        recipients = [policy.notify_role or self._escalation_role, *policy.notify_users]
        payload = {
            **variables,
            "sla_kind": item.kind,
            "sla_item_id": item.id,
            "instance_id": item.instance_id,
            "due_at": item.due_at.isoformat(),
            "escalation_level": level,
        }
        for recipient in dict.fromkeys(recipients):
            try:
                self._notifier.send(template, recipient, payload)
            except Exception:
                logger.exception(
                    "Escalation notification failed",
                    extra={"instance_id": item.instance_id, "recipient": recipient},
                )
