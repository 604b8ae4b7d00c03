"""Tests for the JSON file and in-memory repositories."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from flowforge.engine.config import EngineConfig
from flowforge.engine.definitions import DefinitionStore
from flowforge.engine.errors import FlowForgeError
from flowforge.engine.persistence import (
    InMemoryInstanceRepository,
    JsonDefinitionRepository,
    JsonInstanceRepository,
    JsonTaskRepository,
)
from flowforge.engine.service import WorkflowService
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task, TaskStatus


def _instance(instance_id: str, definition_id: str = "proc", **fields: object) -> Instance:
    return Instance(id=instance_id, definition_id=definition_id, definition_version=1, **fields)


def test_definition_repository_keeps_drafts_and_versions(temp_state_dir: Path) -> None:
    path = temp_state_dir / "definitions.json"
    store = DefinitionStore(JsonDefinitionRepository(path))
    store.create("Proc", definition_id="proc")
    store.publish("proc")
    store.publish("proc")

    reloaded = DefinitionStore(JsonDefinitionRepository(path))

    assert reloaded.get_draft("proc").latest_version == 2
    assert [d.version for d in reloaded.list_versions("proc")] == [1, 2]
    assert reloaded.get("proc").version == 2
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw["versions"]) == {"proc@1", "proc@2"}


def test_deleting_a_draft(temp_state_dir: Path) -> None:
    repo = JsonDefinitionRepository(temp_state_dir / "definitions.json")
    store = DefinitionStore(repo)
    store.create("Proc", definition_id="proc")

    assert repo.delete_draft("proc") is True
    assert repo.delete_draft("proc") is False
    assert repo.list_drafts() == []


def test_instance_repository_filters(temp_state_dir: Path) -> None:
    repo = JsonInstanceRepository(temp_state_dir / "instances.json")
    repo.save(_instance("a"))
    repo.save(_instance("b", status=InstanceStatus.COMPLETED))
    repo.save(_instance("c", definition_id="other"))

    assert repo.get("missing") is None
    assert repo.get("b") is not None
    assert {i.id for i in repo.list(definition_id="proc")} == {"a", "b"}
    assert [i.id for i in repo.list(statuses=[InstanceStatus.COMPLETED])] == ["b"]


def test_task_repository_round_trips_history(temp_state_dir: Path) -> None:
    repo = JsonTaskRepository(temp_state_dir / "tasks.json")
    task = Task(
        id="t1",
        instance_id="a",
        definition_id="proc",
        node_id="review",
        token_id="tok",
        name="Review",
        assignee="alice",
    )
    task.record("created", assignee="alice")
    repo.save_many([task])
    repo.save_many([])

    loaded = repo.get("t1")

    assert loaded == task
    assert repo.list(instance_id="a", statuses=[TaskStatus.PENDING]) == [task]
    assert repo.list(statuses=[TaskStatus.COMPLETED]) == []


def test_missing_file_reads_as_empty(temp_state_dir: Path) -> None:
    repo = JsonInstanceRepository(temp_state_dir / "nested" / "instances.json")

    assert repo.list() == []
    repo.save(_instance("a"))
    assert (temp_state_dir / "nested" / "instances.json").exists()


def test_corrupt_file_raises(temp_state_dir: Path) -> None:
    path = temp_state_dir / "instances.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(FlowForgeError, match="not valid JSON"):
        JsonInstanceRepository(path).list()

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(FlowForgeError, match="unexpected shape"):
        JsonInstanceRepository(path).list()


def test_in_memory_repository_returns_copies() -> None:
    repo = InMemoryInstanceRepository()
    repo.save(_instance("a"))

    loaded = repo.get("a")
    assert loaded is not None
    loaded.variables["leak"] = True

    again = repo.get("a")
    assert again is not None
    assert "leak" not in again.variables


def test_file_backed_service_survives_restart(engine_config: EngineConfig) -> None:
    first = WorkflowService.from_config(engine_config)
    first.import_definition(
        {
            "id": "proc",
            "name": "Purchase",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "review", "type": "approval", "config": {"assignee": "alice"}},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"id": "e1", "source": "start", "target": "review"},
                {"id": "e2", "source": "review", "target": "end"},
            ],
        }
    )
    first.publish("proc")
    instance = first.start_instance("proc", {"amount": 100})

    second = WorkflowService.from_config(engine_config)
    [task] = second.list_tasks(assignee="alice")
    second.complete_task(task.id, "alice", "approved")

    assert second.get_instance(instance.id).status == InstanceStatus.COMPLETED
    assert engine_config.storage.instances_file.exists()
