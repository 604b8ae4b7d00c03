"""Instance lifecycle and token execution.

An instance holds a list of explicit tokens (:class:`ActiveNode`). ``advance``
repeatedly dispatches the first runnable token until none is left: side
effects run, the token is replaced by one token per taken edge, and suspended
tokens (waiting on a task or an async connector) are skipped.

Advance is atomic per call. It works on a copy of the instance and commits the
copy, the tasks it created and its events only when no runnable token is left.
A fatal error instead persists the state from before the call as FAILED.
"""

from __future__ import annotations

import copy
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from flowforge.engine.collaborators.connectors import ConnectorInvoker
from flowforge.engine.collaborators.notifier import Notifier
from flowforge.engine.definitions.models import (
    ActionConfig,
    DecisionConfig,
    Definition,
    DefinitionStatus,
    EmailConfig,
    EndConfig,
    Node,
    NodeType,
    RetryPolicy,
)
from flowforge.engine.definitions.store import DefinitionStore
from flowforge.engine.errors import (
    ConnectorError,
    EvaluationError,
    FlowForgeError,
    InvalidStateError,
    NotFoundError,
    RoutingError,
)
from flowforge.engine.expressions import EvaluationContext, compile_expression, truthy
from flowforge.engine.persistence.repository import InstanceRepository, TaskRepository

from .events import EventBus, WorkflowEvent
from .locks import InstanceLocks
from .models import (
    OPEN_TASK_STATUSES,
    RUNNABLE_STATES,
    ActiveNode,
    FailureInfo,
    Instance,
    InstanceStatus,
    NodeState,
    Task,
    TaskStatus,
)
from .retry import call_with_retry
from .routing import DecisionRouter, select_decision_edge, select_edges
from .tasks import build_approval_tasks, refresh_due_at

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class StepLimitExceeded(FlowForgeError):
    def __init__(self, message: str, *, node_id: str) -> None:
        super().__init__(message)
        self.node_id = node_id


@dataclass
class _Run:
    """Side effects buffered by one advance call until it commits."""

    tasks: list[Task] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)
    node_id: str | None = None


def _failure_code(exc: Exception) -> str:
    if isinstance(exc, RoutingError):
        return "routing_error"
    if isinstance(exc, ConnectorError):
        return "connector_error"
    if isinstance(exc, EvaluationError):
        return "evaluation_error"
    if isinstance(exc, StepLimitExceeded):
        return "step_limit_exceeded"
    return "engine_error"


def _new_token(node_id: str, *, outcome: str | None, now: datetime) -> ActiveNode:
    return ActiveNode(
        token_id=str(uuid.uuid4()), node_id=node_id, outcome=outcome, activated_at=now
    )


def _drop(work: Instance, token: ActiveNode) -> None:
    work.active_nodes = [t for t in work.active_nodes if t.token_id != token.token_id]


class InstanceStateMachine:
    def __init__(
        self,
        definitions: DefinitionStore,
        instances: InstanceRepository,
        tasks: TaskRepository,
        *,
        connectors: ConnectorInvoker,
        notifier: Notifier,
        router: DecisionRouter | None = None,
        events: EventBus | None = None,
        locks: InstanceLocks | None = None,
        default_retry: RetryPolicy | None = None,
        max_steps: int = 10000,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._tasks = tasks
        self._connectors = connectors
        self._notifier = notifier
        self._router = router or DecisionRouter()
        self._events = events or EventBus()
        self._locks = locks or InstanceLocks()
        self._default_retry = default_retry or RetryPolicy()
        self._max_steps = max_steps
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep

    @property
    def locks(self) -> InstanceLocks:
        return self._locks

    @property
    def events(self) -> EventBus:
        return self._events

    # -- lifecycle ----------------------------------------------------------

    def start(
        self,
        definition: Definition,
        trigger_input: Mapping[str, Any] | None = None,
        *,
        started_by: str = "system",
        trigger_type: str = "manual",
    ) -> Instance:
        """Create an instance pinned to ``definition`` and run it as far as it goes."""

        if definition.status != DefinitionStatus.ACTIVE:
            raise InvalidStateError(
                f"Definition {definition.id!r} version {definition.version} is not active"
            )

        now = self._clock()
        trigger = dict(trigger_input or {})
        variables = {v.name: copy.deepcopy(v.default) for v in definition.variables}
        variables.update(trigger)

        sla = definition.settings.sla
        deadline = now + timedelta(hours=sla.instance_due_hours) if sla.instance_due_hours else None

        instance = Instance(
            id=str(uuid.uuid4()),
            definition_id=definition.id,
            definition_version=definition.version,
            active_nodes=[_new_token(definition.start_node.id, outcome=None, now=now)],
            variables=variables,
            trigger=trigger,
            trigger_type=trigger_type,
            started_by=started_by,
            started_at=now,
            deadline_at=deadline,
            due_at=deadline,
        )
        instance.record(
            "instance.started",
            actor=started_by,
            at=now,
            version=definition.version,
            trigger_type=trigger_type,
        )
        self._instances.save(instance)
        logger.info(
            "Instance started",
            extra={
                "instance_id": instance.id,
                "definition_id": definition.id,
                "version": definition.version,
                "by": started_by,
            },
        )
        self._events.publish(
            WorkflowEvent(
                type="instance.started",
                instance_id=instance.id,
                payload={"definition_id": definition.id, "version": definition.version},
            )
        )
        return self.advance(instance.id)

    def get(self, instance_id: str) -> Instance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance {instance_id!r} not found")
        return instance

    def advance(self, instance_id: str) -> Instance:
        """Run every runnable token to a fixed point.

        A no-op for instances that are not RUNNING and for instances without
        runnable tokens, so calling it twice is the same as calling it once.
        """

        with self._locks.hold(instance_id):
            instance = self.get(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                return instance
            if not any(t.state in RUNNABLE_STATES for t in instance.active_nodes):
                return instance

            definition = self._definitions.get(instance.definition_id, instance.definition_version)
            work = instance.model_copy(deep=True)
            run = _Run()
            try:
                self._drive(work, definition, run)
            except FlowForgeError as e:
                return self._fail(instance, e, node_id=getattr(e, "node_id", None) or run.node_id)

            now = self._clock()
            if not work.active_nodes:
                work.status = InstanceStatus.COMPLETED
                work.completed_at = now
                work.record("instance.completed", at=now)
                run.events.append(
                    WorkflowEvent(
                        type="instance.completed",
                        instance_id=work.id,
                        payload={"output": dict(work.output)},
                        at=now,
                    )
                )

            open_tasks = self._tasks.list(instance_id=work.id, statuses=OPEN_TASK_STATUSES)
            refresh_due_at(work, [*open_tasks, *run.tasks])
            self._tasks.save_many(run.tasks)
            self._instances.save(work)

        if work.status == InstanceStatus.COMPLETED:
            logger.info(
                "Instance completed",
                extra={"instance_id": work.id, "definition_id": work.definition_id},
            )
        for event in run.events:
            self._events.publish(event)
        return work

    def cancel(self, instance_id: str, actor: str) -> Instance:
        with self._locks.hold(instance_id):
            instance = self.get(instance_id)
            if instance.status == InstanceStatus.CANCELLED:
                return instance
            if instance.status in (InstanceStatus.COMPLETED, InstanceStatus.FAILED):
                raise InvalidStateError(
                    f"Instance {instance_id!r} is {instance.status.value} and cannot be cancelled"
                )

            now = self._clock()
            instance.status = InstanceStatus.CANCELLED
            instance.cancelled_by = actor
            instance.completed_at = now
            instance.record(
                "instance.cancelled",
                actor=actor,
                at=now,
                tokens=[t.node_id for t in instance.active_nodes],
            )
            instance.active_nodes = []
            instance.due_at = None
            self._cancel_open_tasks(instance.id, now, reason="instance cancelled")
            self._instances.save(instance)

        logger.info("Instance cancelled", extra={"instance_id": instance_id, "by": actor})
        self._events.publish(
            WorkflowEvent(type="instance.cancelled", instance_id=instance_id, payload={"by": actor})
        )
        return instance

    def pause(self, instance_id: str, actor: str | None = None) -> Instance:
        """Stop advancing; open tasks stay open and can still be worked on."""

        with self._locks.hold(instance_id):
            instance = self.get(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidStateError(
                    f"Instance {instance_id!r} is {instance.status.value}, not running"
                )
            instance.status = InstanceStatus.PAUSED
            instance.record("instance.paused", actor=actor, at=self._clock())
            self._instances.save(instance)
        logger.info("Instance paused", extra={"instance_id": instance_id, "by": actor})
        return instance

    def resume(
        self,
        instance_id: str,
        data: Mapping[str, Any] | None = None,
        actor: str | None = None,
    ) -> Instance:
        with self._locks.hold(instance_id):
            instance = self.get(instance_id)
            if instance.status != InstanceStatus.PAUSED:
                raise InvalidStateError(
                    f"Instance {instance_id!r} is {instance.status.value}, not paused"
                )
            instance.status = InstanceStatus.RUNNING
            instance.variables.update(dict(data or {}))
            instance.record("instance.resumed", actor=actor, at=self._clock())
            self._instances.save(instance)
            logger.info("Instance resumed", extra={"instance_id": instance_id, "by": actor})
            return self.advance(instance_id)

    def resolve_action(
        self,
        instance_id: str,
        call_id: str,
        outputs: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> Instance:
        """Deliver the result of an async connector call.

        Results for instances that already ended are discarded.
        """

        with self._locks.hold(instance_id):
            instance = self.get(instance_id)
            if instance.is_terminal:
                logger.info(
                    "Discarding late connector result",
                    extra={"instance_id": instance_id, "call_id": call_id},
                )
                return instance

            token = next(
                (
                    t
                    for t in instance.active_nodes
                    if t.call_id == call_id and t.state == NodeState.AWAITING_CONNECTOR
                ),
                None,
            )
            if token is None:
                raise InvalidStateError(
                    f"Instance {instance_id!r} is not waiting for call {call_id!r}"
                )

            definition = self._definitions.get(instance.definition_id, instance.definition_version)
            node = definition.node(token.node_id)
            if node is None or not isinstance(node.config, ActionConfig):
                raise InvalidStateError(f"Token {token.token_id!r} is not at an action node")

            now = self._clock()
            if error is not None:
                policy = node.config.on_error or definition.settings.error_handling
                if policy == "stop":
                    return self._fail(instance, ConnectorError(error), node_id=node.id)
                logger.warning(
                    "Async connector call failed, continuing: %s",
                    error,
                    extra={"instance_id": instance_id, "node_id": node.id},
                )
                instance.record("action.failed", node_id=node.id, at=now, error=error)
            else:
                self._apply_outputs(instance, token, node.config, dict(outputs or {}))
                instance.record("action.completed", node_id=node.id, at=now, call_id=call_id)

            token.state = NodeState.RESOLVED
            token.call_id = None
            self._instances.save(instance)

            if instance.status != InstanceStatus.RUNNING:
                return instance
            return self.advance(instance_id)

    # -- execution ----------------------------------------------------------

    def _drive(self, work: Instance, definition: Definition, run: _Run) -> None:
        steps = 0
        while True:
            token = next((t for t in work.active_nodes if t.state in RUNNABLE_STATES), None)
            if token is None:
                return
            steps += 1
            if steps > self._max_steps:
                raise StepLimitExceeded(
                    f"Exceeded {self._max_steps} steps in one advance; the graph likely loops",
                    node_id=token.node_id,
                )
            run.node_id = token.node_id
            node = definition.node(token.node_id)
            if node is None:
                raise RoutingError(
                    f"Token points at unknown node {token.node_id!r}", node_id=token.node_id
                )
            if token.state == NodeState.RESOLVED:
                self._route(work, definition, node, token, run)
            else:
                self._dispatch(work, definition, node, token, run)

    def _dispatch(
        self, work: Instance, definition: Definition, node: Node, token: ActiveNode, run: _Run
    ) -> None:
        now = self._clock()
        logger.debug(
            "Dispatching %s node",
            node.type.value,
            extra={"instance_id": work.id, "node_id": node.id},
        )
        work.record("node.entered", node_id=node.id, at=now, type=node.type.value)

        if node.type == NodeType.START:
            self._route(work, definition, node, token, run)

        elif node.type == NodeType.END:
            assert isinstance(node.config, EndConfig)
            ctx = self._context(work, token.outcome)
            for name, expression in node.config.output_mapping.items():
                work.output[name] = compile_expression(expression).evaluate(ctx)
            _drop(work, token)

        elif node.type == NodeType.DECISION:
            assert isinstance(node.config, DecisionConfig)
            decision = self._decide(work, node, node.config, token)
            work.record("decision.made", node_id=node.id, at=now, decision=decision)
            self._route(work, definition, node, token, run, decision=decision)

        elif node.type == NodeType.ACTION:
            assert isinstance(node.config, ActionConfig)
            self._run_action(work, definition, node, node.config, token, run)

        elif node.type == NodeType.EMAIL:
            assert isinstance(node.config, EmailConfig)
            self._send_email(work, node, node.config, token)
            self._route(work, definition, node, token, run)

        elif node.type == NodeType.APPROVAL:
            tasks = build_approval_tasks(work, definition, node, token, now=now)
            token.state = NodeState.AWAITING_TASK
            token.task_ids = [t.id for t in tasks]
            run.tasks.extend(tasks)
            for task in tasks:
                run.events.append(
                    WorkflowEvent(
                        type="task.created",
                        instance_id=work.id,
                        payload={"task_id": task.id, "node_id": node.id, "assignee": task.assignee},
                        at=now,
                    )
                )

    def _route(
        self,
        work: Instance,
        definition: Definition,
        node: Node,
        token: ActiveNode,
        run: _Run,
        *,
        decision: Any = None,
    ) -> None:
        edges = definition.outgoing(node.id)
        ctx = self._context(work, token.outcome, decision=decision)
        if node.type == NodeType.DECISION:
            taken = [select_decision_edge(node, edges, ctx)]
        else:
            taken = select_edges(node, edges, ctx)

        now = self._clock()
        _drop(work, token)
        for edge in taken:
            work.active_nodes.append(_new_token(edge.target, outcome=token.outcome, now=now))
        if token.outcome is not None:
            work.last_outcome = token.outcome
        work.record(
            "node.completed",
            node_id=node.id,
            at=now,
            edges=[e.id for e in taken],
            outcome=token.outcome,
        )
        if not taken:
            logger.info(
                "Branch ended without outgoing edges",
                extra={"instance_id": work.id, "node_id": node.id},
            )

    def _decide(
        self, work: Instance, node: Node, config: DecisionConfig, token: ActiveNode
    ) -> Any:
        if config.condition:
            ctx = self._context(work, token.outcome)
            try:
                return truthy(compile_expression(config.condition).evaluate(ctx))
            except EvaluationError as e:
                logger.warning(
                    "Decision condition failed, treating as no match: %s",
                    e,
                    extra={"instance_id": work.id, "node_id": node.id},
                )
                return None
        if config.decision_table_id:
            names = config.inputs or list(work.variables)
            inputs = {name: work.variables.get(name) for name in names}
            return self._router.route(config.decision_table_id, inputs)
        return None

    def _run_action(
        self,
        work: Instance,
        definition: Definition,
        node: Node,
        config: ActionConfig,
        token: ActiveNode,
        run: _Run,
    ) -> None:
        ctx = self._context(work, token.outcome)
        inputs = {
            name: compile_expression(expression).evaluate(ctx)
            for name, expression in config.inputs.items()
        }

        if config.mode == "async":
            call_id = str(uuid.uuid4())
            token.state = NodeState.AWAITING_CONNECTOR
            token.call_id = call_id
            run.events.append(
                WorkflowEvent(
                    type="action.requested",
                    instance_id=work.id,
                    payload={
                        "call_id": call_id,
                        "node_id": node.id,
                        "connector": config.connector,
                        "operation": config.operation,
                        "inputs": inputs,
                    },
                    at=self._clock(),
                )
            )
            return

        policy = config.retry or definition.settings.retry or self._default_retry
        log_extra = {"instance_id": work.id, "node_id": node.id, "connector": config.connector}
        try:
            outputs = call_with_retry(
                lambda: self._invoke(config, inputs),
                policy,
                sleep=self._sleep,
                log_extra=log_extra,
            )
        except ConnectorError as e:
            if (config.on_error or definition.settings.error_handling) == "stop":
                raise
            logger.warning("Connector failed, continuing: %s", e, extra=log_extra)
            work.record("action.failed", node_id=node.id, at=self._clock(), error=str(e))
        else:
            self._apply_outputs(work, token, config, outputs)
        self._route(work, definition, node, token, run)

    def _invoke(self, config: ActionConfig, inputs: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._connectors.execute(config.connector, config.operation, inputs)
        except ConnectorError:
            raise
        except Exception as e:
            raise ConnectorError(f"{config.connector}.{config.operation}: {e}") from e

    @staticmethod
    def _apply_outputs(
        work: Instance, token: ActiveNode, config: ActionConfig, outputs: dict[str, Any]
    ) -> None:
        if config.outputs:
            for variable, key in config.outputs.items():
                work.variables[variable] = outputs.get(key)
        else:
            work.variables.update({k: v for k, v in outputs.items() if k != "outcome"})
        outcome = outputs.get("outcome")
        if isinstance(outcome, str):
            token.outcome = outcome

    def _send_email(
        self, work: Instance, node: Node, config: EmailConfig, token: ActiveNode
    ) -> None:
        recipients: list[str] = []
        if config.to:
            recipients.extend(r.strip() for r in config.to.split(",") if r.strip())
        if config.to_expression:
            value = compile_expression(config.to_expression).evaluate(
                self._context(work, token.outcome)
            )
            if isinstance(value, (list, tuple)):
                recipients.extend(str(v) for v in value if v)
            elif value:
                recipients.append(str(value))

        for recipient in recipients:
            try:
                self._notifier.send(config.template, recipient, dict(work.variables))
            except Exception as e:
                if config.fail_on_error:
                    raise ConnectorError(
                        f"Email {config.template!r} to {recipient} failed: {e}", retryable=False
                    ) from e
                logger.warning(
                    "Email delivery failed: %s",
                    e,
                    extra={"instance_id": work.id, "node_id": node.id, "recipient": recipient},
                )

    def _context(
        self, work: Instance, outcome: str | None, *, decision: Any = None
    ) -> EvaluationContext:
        return EvaluationContext(
            variables=work.variables,
            outcome=outcome,
            trigger=work.trigger,
            decision=decision,
            now=self._clock(),
        )

    # -- failure ------------------------------------------------------------

    def _fail(self, instance: Instance, exc: Exception, *, node_id: str | None) -> Instance:
        """Persist ``instance`` (the pre-advance state) as FAILED."""

        now = self._clock()
        code = _failure_code(exc)
        instance.status = InstanceStatus.FAILED
        instance.failure = FailureInfo(reason=str(exc), code=code, node_id=node_id, at=now)
        instance.record(
            "instance.failed",
            node_id=node_id,
            at=now,
            reason=str(exc),
            code=code,
            tokens=[t.node_id for t in instance.active_nodes],
        )
        instance.active_nodes = []
        instance.due_at = None
        self._cancel_open_tasks(instance.id, now, reason="instance failed")
        self._instances.save(instance)

        logger.error(
            "Instance failed: %s",
            exc,
            extra={"instance_id": instance.id, "node_id": node_id, "code": code},
        )
        self._events.publish(
            WorkflowEvent(
                type="instance.failed",
                instance_id=instance.id,
                payload={"node_id": node_id, "reason": str(exc), "code": code},
                at=now,
            )
        )
        return instance

    def _cancel_open_tasks(self, instance_id: str, now: datetime, *, reason: str) -> None:
        tasks = self._tasks.list(instance_id=instance_id, statuses=OPEN_TASK_STATUSES)
        for task in tasks:
            task.status = TaskStatus.CANCELLED
            task.record("cancelled", at=now, reason=reason)
        self._tasks.save_many(tasks)
