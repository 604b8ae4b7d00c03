"""Repository interfaces.

Definitions, instances and tasks each have exactly one authoritative store.
The JSON-file implementations are the production path; the in-memory ones are
test doubles.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from flowforge.engine.definitions.models import Definition, DefinitionDraft
from flowforge.engine.workflow.models import Instance, InstanceStatus, Task, TaskStatus


class DefinitionRepository(Protocol):
    def get_draft(self, definition_id: str) -> DefinitionDraft | None: ...

    def save_draft(self, draft: DefinitionDraft) -> None: ...

    def delete_draft(self, definition_id: str) -> bool: ...

    def list_drafts(self) -> list[DefinitionDraft]: ...

    def get_version(self, definition_id: str, version: int) -> Definition | None: ...

    def save_version(self, definition: Definition) -> None: ...

    def list_versions(self, definition_id: str) -> list[Definition]: ...


class InstanceRepository(Protocol):
    def get(self, instance_id: str) -> Instance | None: ...

    def save(self, instance: Instance) -> None: ...

    def list(
        self,
        *,
        definition_id: str | None = None,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]: ...


class TaskRepository(Protocol):
    def get(self, task_id: str) -> Task | None: ...

    def save(self, task: Task) -> None: ...

    def save_many(self, tasks: Iterable[Task]) -> None: ...

    def list(
        self,
        *,
        instance_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[Task]: ...
