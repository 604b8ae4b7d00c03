"""Persistence for definitions, instances and tasks."""

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

__all__ = [
    "DefinitionRepository",
    "InMemoryDefinitionRepository",
    "InMemoryInstanceRepository",
    "InMemoryTaskRepository",
    "InstanceRepository",
    "JsonDefinitionRepository",
    "JsonInstanceRepository",
    "JsonTaskRepository",
    "TaskRepository",
]
