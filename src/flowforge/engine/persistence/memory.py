"""In-memory repositories.

Records are deep-copied on the way in and out so callers can never mutate
stored state by accident, which mirrors the JSON store's behaviour.
"""

from __future__ import annotations

from collections.abc import Iterable

from flowforge.engine.definitions.models import Definition, DefinitionDraft
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task, TaskStatus


class InMemoryDefinitionRepository:
    def __init__(self) -> None:
        self._drafts: dict[str, DefinitionDraft] = {}
        self._versions: dict[tuple[str, int], Definition] = {}

    def get_draft(self, definition_id: str) -> DefinitionDraft | None:
        draft = self._drafts.get(definition_id)
        return draft.model_copy(deep=True) if draft is not None else None

    def save_draft(self, draft: DefinitionDraft) -> None:
        self._drafts[draft.id] = draft.model_copy(deep=True)

    def delete_draft(self, definition_id: str) -> bool:
        if self._drafts.pop(definition_id, None) is None:
            return False
        for key in [k for k in self._versions if k[0] == definition_id]:
            del self._versions[key]
        return True

    def list_drafts(self) -> list[DefinitionDraft]:
        return [d.model_copy(deep=True) for d in self._drafts.values()]

    def get_version(self, definition_id: str, version: int) -> Definition | None:
        # Definitions are frozen; sharing them is safe.
        return self._versions.get((definition_id, version))

    def save_version(self, definition: Definition) -> None:
        self._versions[(definition.id, definition.version)] = definition

    def list_versions(self, definition_id: str) -> list[Definition]:
        return sorted(
            (d for (def_id, _), d in self._versions.items() if def_id == definition_id),
            key=lambda d: d.version,
        )


class InMemoryInstanceRepository:
    def __init__(self) -> None:
        self._items: dict[str, Instance] = {}

    def get(self, instance_id: str) -> Instance | None:
        item = self._items.get(instance_id)
        return item.model_copy(deep=True) if item is not None else None

    def save(self, instance: Instance) -> None:
        self._items[instance.id] = instance.model_copy(deep=True)

    def list(
        self,
        *,
        definition_id: str | None = None,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        wanted = {InstanceStatus(s) for s in statuses} if statuses is not None else None
        return [
            i.model_copy(deep=True)
            for i in self._items.values()
            if (definition_id is None or i.definition_id == definition_id)
            and (wanted is None or i.status in wanted)
        ]


class InMemoryTaskRepository:
    def __init__(self) -> None:
        self._items: dict[str, Task] = {}

    def get(self, task_id: str) -> Task | None:
        item = self._items.get(task_id)
        return item.model_copy(deep=True) if item is not None else None

    def save(self, task: Task) -> None:
        self._items[task.id] = task.model_copy(deep=True)

    def save_many(self, tasks: Iterable[Task]) -> None:
        for task in tasks:
            self.save(task)

    def list(
        self,
        *,
        instance_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[Task]:
        wanted = {TaskStatus(s) for s in statuses} if statuses is not None else None
        return [
            t.model_copy(deep=True)
            for t in self._items.values()
            if (instance_id is None or t.instance_id == instance_id)
            and (wanted is None or t.status in wanted)
        ]
