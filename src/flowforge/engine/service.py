"""Single entry point wiring the engine components together.

Adapters (CLI, REST) talk to :class:`WorkflowService` only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from flowforge.engine.collaborators.connectors import (
    CallableConnectorInvoker,
    ConnectorInvoker,
    HttpConnectorInvoker,
    load_connector_endpoints,
)
from flowforge.engine.collaborators.decision_tables import (
    DecisionTableService,
    InMemoryDecisionTableService,
    load_decision_tables,
)
from flowforge.engine.collaborators.notifier import LoggingNotifier, Notifier, SmtpNotifier
from flowforge.engine.config import EngineConfig
from flowforge.engine.definitions.models import (
    Definition,
    DefinitionDraft,
    DefinitionStatus,
    Edge,
    Node,
    RetryPolicy,
    Trigger,
    Variable,
)
from flowforge.engine.definitions.store import Clock, DefinitionStore
from flowforge.engine.persistence.json_store import (
    JsonDefinitionRepository,
    JsonInstanceRepository,
    JsonTaskRepository,
)
from flowforge.engine.persistence.memory import (
    InMemoryDefinitionRepository,
    InMemoryInstanceRepository,
    InMemoryTaskRepository,
)
from flowforge.engine.persistence.repository import (
    DefinitionRepository,
    InstanceRepository,
    TaskRepository,
)
from flowforge.engine.workflow.events import EventBus
from flowforge.engine.workflow.locks import InstanceLocks
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task
from flowforge.engine.workflow.routing import DecisionRouter
from flowforge.engine.workflow.sla import OverdueItem, SlaMonitor
from flowforge.engine.workflow.state_machine import InstanceStateMachine
from flowforge.engine.workflow.tasks import TaskManager

logger = logging.getLogger(__name__)


@dataclass
class WorkflowService:
    definitions: DefinitionStore
    instances: InstanceRepository
    state_machine: InstanceStateMachine
    tasks: TaskManager
    sla: SlaMonitor
    events: EventBus

    @classmethod
    def build(
        cls,
        *,
        definition_repo: DefinitionRepository,
        instance_repo: InstanceRepository,
        task_repo: TaskRepository,
        connectors: ConnectorInvoker,
        notifier: Notifier,
        decision_tables: DecisionTableService | None = None,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkflowService:
        config = config or EngineConfig()
        events = EventBus()
        locks = InstanceLocks()
        definitions = DefinitionStore(definition_repo, clock=clock)
        retry = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            backoff=config.retry.backoff,
            initial_delay_ms=config.retry.initial_delay_ms,
            max_delay_ms=config.retry.max_delay_ms,
        )
        extra: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        state_machine = InstanceStateMachine(
            definitions,
            instance_repo,
            task_repo,
            connectors=connectors,
            notifier=notifier,
            router=DecisionRouter(decision_tables),
            events=events,
            locks=locks,
            default_retry=retry,
            max_steps=config.max_steps_per_advance,
            clock=clock,
            **extra,
        )
        tasks = TaskManager(
            task_repo,
            instance_repo,
            definitions,
            state_machine,
            locks=locks,
            events=events,
            clock=clock,
        )
        sla = SlaMonitor(
            task_repo,
            instance_repo,
            definitions,
            notifier,
            locks=locks,
            events=events,
            sweep_interval_seconds=config.sla.sweep_interval_seconds,
            escalation_role=config.sla.escalation_role,
            escalation_template=config.sla.escalation_template,
            clock=clock,
        )
        return cls(
            definitions=definitions,
            instances=instance_repo,
            state_machine=state_machine,
            tasks=tasks,
            sla=sla,
            events=events,
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        connectors: ConnectorInvoker | None = None,
        notifier: Notifier | None = None,
        decision_tables: DecisionTableService | None = None,
    ) -> WorkflowService:
        """Build a service backed by JSON files under ``config.storage.path``."""

        if connectors is None:
            if config.connectors_file is not None:
                connectors = HttpConnectorInvoker(load_connector_endpoints(config.connectors_file))
            else:
                connectors = CallableConnectorInvoker()
        if notifier is None:
            smtp = config.notifications
            if smtp.backend == "smtp":
                notifier = SmtpNotifier(
                    host=smtp.host,
                    port=smtp.port,
                    sender=smtp.sender,
                    username=smtp.username,
                    password=smtp.password,
                    use_tls=smtp.use_tls,
                )
            else:
                notifier = LoggingNotifier()
        if decision_tables is None and config.decision_tables_file is not None:
            decision_tables = InMemoryDecisionTableService(
                load_decision_tables(config.decision_tables_file)
            )

        storage = config.storage
        return cls.build(
            definition_repo=JsonDefinitionRepository(storage.definitions_file),
            instance_repo=JsonInstanceRepository(storage.instances_file),
            task_repo=JsonTaskRepository(storage.tasks_file),
            connectors=connectors,
            notifier=notifier,
            decision_tables=decision_tables,
            config=config,
        )

    @classmethod
    def in_memory(
        cls,
        *,
        connectors: ConnectorInvoker | None = None,
        notifier: Notifier | None = None,
        decision_tables: DecisionTableService | None = None,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkflowService:
        return cls.build(
            definition_repo=InMemoryDefinitionRepository(),
            instance_repo=InMemoryInstanceRepository(),
            task_repo=InMemoryTaskRepository(),
            connectors=connectors or CallableConnectorInvoker(),
            notifier=notifier or LoggingNotifier(),
            decision_tables=decision_tables,
            config=config,
            clock=clock,
            sleep=sleep,
        )

    # -- definitions --------------------------------------------------------

    def create_definition(
        self, name: str, *, description: str | None = None, created_by: str = "system"
    ) -> DefinitionDraft:
        return self.definitions.create(name, description=description, created_by=created_by)

    def import_definition(
        self, payload: Mapping[str, Any], *, created_by: str = "system"
    ) -> DefinitionDraft:
        return self.definitions.import_draft(payload, created_by=created_by)

    def get_draft(self, definition_id: str) -> DefinitionDraft:
        return self.definitions.get_draft(definition_id)

    def list_definitions(
        self, *, status: DefinitionStatus | str | None = None, search: str | None = None
    ) -> list[DefinitionDraft]:
        return self.definitions.list(status=status, search=search)

    def update_definition(self, definition_id: str, **changes: Any) -> DefinitionDraft:
        return self.definitions.update(definition_id, **changes)

    def delete_definition(self, definition_id: str) -> None:
        self.definitions.delete(definition_id)

    def add_node(self, definition_id: str, node: Node | Mapping[str, Any]) -> Node:
        return self.definitions.add_node(definition_id, node)

    def update_node(self, definition_id: str, node_id: str, changes: Mapping[str, Any]) -> Node:
        return self.definitions.update_node(definition_id, node_id, changes)

    def delete_node(self, definition_id: str, node_id: str) -> None:
        self.definitions.delete_node(definition_id, node_id)

    def add_edge(self, definition_id: str, edge: Edge | Mapping[str, Any]) -> Edge:
        return self.definitions.add_edge(definition_id, edge)

    def update_edge(self, definition_id: str, edge_id: str, changes: Mapping[str, Any]) -> Edge:
        return self.definitions.update_edge(definition_id, edge_id, changes)

    def delete_edge(self, definition_id: str, edge_id: str) -> None:
        self.definitions.delete_edge(definition_id, edge_id)

    def add_trigger(self, definition_id: str, trigger: Trigger | Mapping[str, Any]) -> Trigger:
        return self.definitions.add_trigger(definition_id, trigger)

    def update_trigger(
        self, definition_id: str, trigger_id: str, changes: Mapping[str, Any]
    ) -> Trigger:
        return self.definitions.update_trigger(definition_id, trigger_id, changes)

    def delete_trigger(self, definition_id: str, trigger_id: str) -> None:
        self.definitions.delete_trigger(definition_id, trigger_id)

    def set_variables(
        self, definition_id: str, variables: Iterable[Variable | Mapping[str, Any]]
    ) -> list[Variable]:
        return self.definitions.set_variables(definition_id, variables)

    def validate_definition(self, definition_id: str) -> list[str]:
        return self.definitions.validate(definition_id)

    def publish(self, definition_id: str, *, published_by: str = "system") -> Definition:
        return self.definitions.publish(definition_id, published_by=published_by)

    def unpublish(self, definition_id: str) -> DefinitionDraft:
        return self.definitions.unpublish(definition_id)

    def archive(self, definition_id: str) -> DefinitionDraft:
        return self.definitions.archive(definition_id)

    def get_definition(self, definition_id: str, version: int | None = None) -> Definition:
        return self.definitions.get(definition_id, version)

    def list_versions(self, definition_id: str) -> list[Definition]:
        return self.definitions.list_versions(definition_id)

    # -- instances ----------------------------------------------------------

    def start_instance(
        self,
        definition_id: str,
        trigger_input: Mapping[str, Any] | None = None,
        *,
        started_by: str = "system",
        trigger_type: str = "manual",
        version: int | None = None,
    ) -> Instance:
        definition = self.definitions.get(definition_id, version)
        return self.state_machine.start(
            definition, trigger_input, started_by=started_by, trigger_type=trigger_type
        )

    def handle_form_submission(
        self, form_id: str, data: Mapping[str, Any], *, submitted_by: str = "anonymous"
    ) -> list[Instance]:
        """Start every active definition with an enabled trigger for ``form_id``."""

        started: list[Instance] = []
        for definition in self.definitions.active_definitions():
            for trigger in definition.triggers:
                if (
                    trigger.type == "form"
                    and trigger.enabled
                    and trigger.config.get("form_id") == form_id
                ):
                    started.append(
                        self.state_machine.start(
                            definition, data, started_by=submitted_by, trigger_type="form"
                        )
                    )
                    break
        logger.info(
            "Form submission handled",
            extra={"form_id": form_id, "instances": [i.id for i in started]},
        )
        return started

    def get_instance(self, instance_id: str) -> Instance:
        return self.state_machine.get(instance_id)

    def list_instances(
        self,
        *,
        definition_id: str | None = None,
        status: InstanceStatus | str | None = None,
    ) -> list[Instance]:
        statuses = [InstanceStatus(status)] if status is not None else None
        instances = self.instances.list(definition_id=definition_id, statuses=statuses)
        return sorted(instances, key=lambda i: i.started_at, reverse=True)

    def advance(self, instance_id: str) -> Instance:
        return self.state_machine.advance(instance_id)

    def cancel_instance(self, instance_id: str, actor: str) -> Instance:
        return self.state_machine.cancel(instance_id, actor)

    def pause_instance(self, instance_id: str, actor: str | None = None) -> Instance:
        return self.state_machine.pause(instance_id, actor)

    def resume_instance(
        self, instance_id: str, data: Mapping[str, Any] | None = None, actor: str | None = None
    ) -> Instance:
        return self.state_machine.resume(instance_id, data, actor)

    def resolve_action(
        self,
        instance_id: str,
        call_id: str,
        outputs: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> Instance:
        return self.state_machine.resolve_action(instance_id, call_id, outputs, error)

    def instance_tasks(self, instance_id: str) -> list[Task]:
        self.get_instance(instance_id)
        return self.tasks.list(instance_id=instance_id)

    # -- tasks --------------------------------------------------------------

    def list_tasks(
        self,
        *,
        assignee: str | None = None,
        status: str | None = None,
        instance_id: str | None = None,
        definition_id: str | None = None,
    ) -> list[Task]:
        return self.tasks.list(
            assignee=assignee, status=status, instance_id=instance_id, definition_id=definition_id
        )

    def get_task(self, task_id: str) -> Task:
        return self.tasks.get(task_id)

    def claim_task(self, task_id: str, user_id: str) -> Task:
        return self.tasks.claim(task_id, user_id)

    def release_task(self, task_id: str, user_id: str) -> Task:
        return self.tasks.release(task_id, user_id)

    def complete_task(
        self,
        task_id: str,
        user_id: str,
        outcome: str,
        data: Mapping[str, Any] | None = None,
        comments: str | None = None,
    ) -> Task:
        return self.tasks.complete(task_id, user_id, outcome, data, comments)

    def delegate_task(self, task_id: str, user_id: str, to_user_id: str) -> Task:
        return self.tasks.delegate(task_id, user_id, to_user_id)

    # -- SLA ----------------------------------------------------------------

    def sla_sweep(self) -> list[OverdueItem]:
        return self.sla.sweep()
