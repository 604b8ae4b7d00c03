"""CLI entrypoint for the FlowForge engine.

State lives in the JSON store configured by ``FLOWFORGE_STORAGE_PATH``.

Exit codes: 0 ok, 1 unexpected error, 2 configuration error, 3 invalid
definition, 4 not found, 5 invalid state.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowforge import __version__
from flowforge.engine.config import EngineConfig
from flowforge.engine.definitions.models import DefinitionDraft
from flowforge.engine.definitions.validation import validate_graph
from flowforge.engine.errors import (
    FlowForgeError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from flowforge.engine.logging import configure_logging
from flowforge.engine.service import WorkflowService

logger = logging.getLogger(__name__)


def _json_arg(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    data = json.loads(value)
    if not isinstance(data, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return data


def _load_document(path: str) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValidationError([f"{path}: expected a JSON object"])
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowforge",
        description="FlowForge workflow orchestration engine",
    )
    parser.add_argument("--version", action="version", version=f"flowforge {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a definition JSON file")
    validate.add_argument("file", help="Path to the definition document")

    import_ = subparsers.add_parser("import", help="Import a definition JSON file as a draft")
    import_.add_argument("file", help="Path to the definition document")
    import_.add_argument("--by", default="cli", help="Author recorded on the draft")
    import_.add_argument(
        "--publish", action="store_true", help="Publish the draft right after importing"
    )

    publish = subparsers.add_parser("publish", help="Publish a draft as a new version")
    publish.add_argument("definition_id")
    publish.add_argument("--by", default="cli", help="Publisher recorded on the version")

    start = subparsers.add_parser("start", help="Start an instance of an active definition")
    start.add_argument("definition_id")
    start.add_argument("--input", type=_json_arg, default={}, help="Trigger input as JSON")
    start.add_argument("--version", dest="def_version", type=int, default=None)
    start.add_argument("--by", default="cli", help="User starting the instance")

    instances = subparsers.add_parser("instances", help="List instances")
    instances.add_argument("--definition", default=None)
    instances.add_argument("--status", default=None)

    tasks = subparsers.add_parser("tasks", help="List tasks, pending first")
    tasks.add_argument("--assignee", default=None)
    tasks.add_argument("--status", default=None)
    tasks.add_argument("--instance", default=None)

    complete = subparsers.add_parser("complete-task", help="Complete a task")
    complete.add_argument("task_id")
    complete.add_argument("--user", required=True)
    complete.add_argument("--outcome", required=True)
    complete.add_argument("--data", type=_json_arg, default={}, help="Response data as JSON")
    complete.add_argument("--comments", default=None)

    cancel = subparsers.add_parser("cancel", help="Cancel an instance")
    cancel.add_argument("instance_id")
    cancel.add_argument("--by", default="cli")

    subparsers.add_parser("sla-sweep", help="Escalate overdue tasks and instances once")

    return parser


def _run(args: argparse.Namespace, config: EngineConfig) -> int:
    if args.command == "validate":
        try:
            draft = DefinitionDraft.model_validate(_load_document(args.file))
        except PydanticValidationError as e:
            raise ValidationError([str(err["msg"]) for err in e.errors()]) from e
        violations = validate_graph(draft.nodes, draft.edges, draft.variables)
        if violations:
            raise ValidationError(violations)
        print(f"{args.file}: OK ({len(draft.nodes)} nodes, {len(draft.edges)} edges)")
        return 0

    service = WorkflowService.from_config(config)

    if args.command == "import":
        draft = service.import_definition(_load_document(args.file), created_by=args.by)
        print(f"Imported definition {draft.id}: {draft.name}")
        if args.publish:
            definition = service.publish(draft.id, published_by=args.by)
            print(f"Published {definition.id} version {definition.version}")
        return 0

    if args.command == "publish":
        definition = service.publish(args.definition_id, published_by=args.by)
        print(f"Published {definition.id} version {definition.version}")
        return 0

    if args.command == "start":
        instance = service.start_instance(
            args.definition_id, args.input, started_by=args.by, version=args.def_version
        )
        print(f"Started instance {instance.id}: {instance.status.value}")
        return 0

    if args.command == "instances":
        for instance in service.list_instances(
            definition_id=args.definition, status=args.status
        ):
            nodes = ",".join(t.node_id for t in instance.active_nodes) or "-"
            print(
                f"{instance.id}\t{instance.definition_id}@{instance.definition_version}"
                f"\t{instance.status.value}\t{nodes}"
            )
        return 0

    if args.command == "tasks":
        for task in service.list_tasks(
            assignee=args.assignee, status=args.status, instance_id=args.instance
        ):
            due = task.due_at.isoformat() if task.due_at else "-"
            print(f"{task.id}\t{task.status.value}\t{task.assignee}\t{due}\t{task.name}")
        return 0

    if args.command == "complete-task":
        task = service.complete_task(
            args.task_id, args.user, args.outcome, args.data, args.comments
        )
        instance = service.get_instance(task.instance_id)
        print(f"Completed task {task.id}; instance {instance.id} is {instance.status.value}")
        return 0

    if args.command == "cancel":
        instance = service.cancel_instance(args.instance_id, args.by)
        print(f"Cancelled instance {instance.id}")
        return 0

    if args.command == "sla-sweep":
        items = service.sla_sweep()
        for item in items:
            print(f"{item.kind}\t{item.id}\tlevel {item.escalation_level + 1}")
        print(f"Escalated {len(items)} item(s)")
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig()
    except PydanticValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(config.log_level, debug=config.debug)

    try:
        return _run(args, config)

    except ValidationError as e:
        logger.warning("Validation failed", extra={"violations": e.violations})
        for violation in e.violations:
            print(f"- {violation}", file=sys.stderr)
        return 3

    except NotFoundError as e:
        print(str(e), file=sys.stderr)
        return 4

    except InvalidStateError as e:
        print(str(e), file=sys.stderr)
        return 5

    except FlowForgeError as e:
        logger.error("Command failed: %s", e)
        print(str(e), file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
