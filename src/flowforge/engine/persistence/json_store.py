"""JSON-file backed repositories.

Each repository owns one JSON file and guards it with a lock. The whole file is
loaded for every operation; this is fine for the record counts a single engine
process handles and keeps the on-disk format trivially inspectable.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flowforge.engine.definitions.models import Definition, DefinitionDraft
from flowforge.engine.errors import FlowForgeError
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class _JsonFile:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _read_unlocked(self, empty: Any) -> Any:
        if not self.path.exists():
            return empty
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise FlowForgeError(f"Store file {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, type(empty)):
            raise FlowForgeError(f"Store file {self.path} has an unexpected shape")
        return raw

    def _write_unlocked(self, payload: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)


class JsonDefinitionRepository(_JsonFile):
    """Drafts and published versions in one file.

    Layout: ``{"drafts": {id: draft}, "versions": {"id@version": definition}}``.
    """

    def _load_unlocked(self) -> dict[str, dict[str, Any]]:
        raw = self._read_unlocked({})
        raw.setdefault("drafts", {})
        raw.setdefault("versions", {})
        return raw

    def get_draft(self, definition_id: str) -> DefinitionDraft | None:
        with self._lock:
            item = self._load_unlocked()["drafts"].get(definition_id)
        return DefinitionDraft.model_validate(item) if item is not None else None

    def save_draft(self, draft: DefinitionDraft) -> None:
        with self._lock:
            data = self._load_unlocked()
            data["drafts"][draft.id] = draft.model_dump(mode="json")
            self._write_unlocked(data)

    def delete_draft(self, definition_id: str) -> bool:
        with self._lock:
            data = self._load_unlocked()
            if data["drafts"].pop(definition_id, None) is None:
                return False
            data["versions"] = {
                key: value
                for key, value in data["versions"].items()
                if value.get("id") != definition_id
            }
            self._write_unlocked(data)
            return True

    def list_drafts(self) -> list[DefinitionDraft]:
        with self._lock:
            items = list(self._load_unlocked()["drafts"].values())
        return [DefinitionDraft.model_validate(item) for item in items]

    def get_version(self, definition_id: str, version: int) -> Definition | None:
        with self._lock:
            item = self._load_unlocked()["versions"].get(f"{definition_id}@{version}")
        return Definition.model_validate(item) if item is not None else None

    def save_version(self, definition: Definition) -> None:
        with self._lock:
            data = self._load_unlocked()
            data["versions"][f"{definition.id}@{definition.version}"] = definition.model_dump(
                mode="json"
            )
            self._write_unlocked(data)

    def list_versions(self, definition_id: str) -> list[Definition]:
        with self._lock:
            items = [
                item
                for item in self._load_unlocked()["versions"].values()
                if item.get("id") == definition_id
            ]
        versions = [Definition.model_validate(item) for item in items]
        return sorted(versions, key=lambda d: d.version)


class JsonInstanceRepository(_JsonFile):
    def _load_unlocked(self) -> dict[str, Any]:
        return self._read_unlocked({})

    def get(self, instance_id: str) -> Instance | None:
        with self._lock:
            item = self._load_unlocked().get(instance_id)
        return Instance.model_validate(item) if item is not None else None

    def save(self, instance: Instance) -> None:
        with self._lock:
            data = self._load_unlocked()
            data[instance.id] = instance.model_dump(mode="json")
            self._write_unlocked(data)

    def list(
        self,
        *,
        definition_id: str | None = None,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        with self._lock:
            items = list(self._load_unlocked().values())
        wanted = {InstanceStatus(s) for s in statuses} if statuses is not None else None
        instances = [Instance.model_validate(item) for item in items]
        return [
            i
            for i in instances
            if (definition_id is None or i.definition_id == definition_id)
            and (wanted is None or i.status in wanted)
        ]


class JsonTaskRepository(_JsonFile):
    def _load_unlocked(self) -> dict[str, Any]:
        return self._read_unlocked({})

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            item = self._load_unlocked().get(task_id)
        return Task.model_validate(item) if item is not None else None

    def save(self, task: Task) -> None:
        self.save_many([task])

    def save_many(self, tasks: Iterable[Task]) -> None:
        tasks = list(tasks)
        if not tasks:
            return
        with self._lock:
            data = self._load_unlocked()
            for task in tasks:
                data[task.id] = task.model_dump(mode="json")
            self._write_unlocked(data)

    def list(
        self,
        *,
        instance_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[Task]:
        with self._lock:
            items = list(self._load_unlocked().values())
        wanted = {TaskStatus(s) for s in statuses} if statuses is not None else None
        tasks = [Task.model_validate(item) for item in items]
        return [
            t
            for t in tasks
            if (instance_id is None or t.instance_id == instance_id)
            and (wanted is None or t.status in wanted)
        ]
