"""Authoring and publishing of process definitions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowforge.engine.errors import InvalidStateError, NotFoundError, ValidationError
from flowforge.engine.persistence.repository import DefinitionRepository

from .models import (
    Definition,
    DefinitionDraft,
    DefinitionSettings,
    DefinitionStatus,
    Edge,
    Node,
    NodeType,
    Trigger,
    Variable,
)
from .validation import validate_graph

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _pydantic_violations(exc: PydanticValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'definition'}: {err['msg']}"
        for err in exc.errors()
    ]


class DefinitionStore:
    """Drafts, published versions and their lifecycle.

    A draft is the only mutable form of a definition. :meth:`publish` validates
    it and freezes a new numbered version; earlier versions stay readable so
    that running instances keep executing the graph they started on.
    """

    def __init__(self, repository: DefinitionRepository, *, clock: Clock | None = None) -> None:
        self._repo = repository
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    # -- drafts -------------------------------------------------------------

    def create(
        self,
        name: str,
        *,
        description: str | None = None,
        created_by: str = "system",
        definition_id: str | None = None,
    ) -> DefinitionDraft:
        """Create a draft seeded with a start node wired to an end node."""

        definition_id = definition_id or _new_id("def")
        if self._repo.get_draft(definition_id) is not None:
            raise InvalidStateError(f"Definition {definition_id!r} already exists")

        now = self._clock()
        draft = DefinitionDraft(
            id=definition_id,
            name=name,
            description=description,
            nodes=[
                Node(id="start", type=NodeType.START, name="Start", position={"x": 250, "y": 50}),
                Node(id="end", type=NodeType.END, name="End", position={"x": 250, "y": 300}),
            ],
            edges=[Edge(id="edge-start-end", source="start", target="end")],
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self._repo.save_draft(draft)
        logger.info("Definition created", extra={"definition_id": draft.id, "by": created_by})
        return draft

    def import_draft(self, payload: Mapping[str, Any], *, created_by: str = "system") -> DefinitionDraft:
        """Create or replace a draft from a serialised definition document."""

        data = dict(payload)
        data.setdefault("id", _new_id("def"))
        data.setdefault("created_by", created_by)
        for key in ("status", "latest_version", "version", "published_at", "published_by"):
            data.pop(key, None)
        try:
            draft = DefinitionDraft.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(_pydantic_violations(e)) from e

        existing = self._repo.get_draft(draft.id)
        if existing is not None:
            if existing.status == DefinitionStatus.ARCHIVED:
                raise InvalidStateError(f"Definition {draft.id!r} is archived")
            draft = draft.model_copy(
                update={
                    "status": existing.status,
                    "latest_version": existing.latest_version,
                    "created_at": existing.created_at,
                    "created_by": existing.created_by,
                }
            )
        draft.updated_at = self._clock()
        self._repo.save_draft(draft)
        logger.info("Definition imported", extra={"definition_id": draft.id})
        return draft

    def get_draft(self, definition_id: str) -> DefinitionDraft:
        draft = self._repo.get_draft(definition_id)
        if draft is None:
            raise NotFoundError(f"Definition {definition_id!r} not found")
        return draft

    def list(
        self,
        *,
        status: DefinitionStatus | str | None = None,
        search: str | None = None,
    ) -> list[DefinitionDraft]:
        wanted = DefinitionStatus(status) if status is not None else None
        needle = search.lower() if search else None
        drafts = [
            d
            for d in self._repo.list_drafts()
            if (wanted is None or d.status == wanted)
            and (
                needle is None
                or needle in d.name.lower()
                or needle in (d.description or "").lower()
            )
        ]
        return sorted(drafts, key=lambda d: d.updated_at, reverse=True)

    def update(
        self,
        definition_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        settings: DefinitionSettings | Mapping[str, Any] | None = None,
    ) -> DefinitionDraft:
        def mutate(draft: DefinitionDraft) -> None:
            if name is not None:
                draft.name = name
            if description is not None:
                draft.description = description
            if settings is not None:
                draft.settings = DefinitionSettings.model_validate(settings)

        return self._edit(definition_id, mutate)

    def delete(self, definition_id: str) -> None:
        draft = self.get_draft(definition_id)
        if draft.status == DefinitionStatus.ACTIVE:
            raise InvalidStateError(
                f"Definition {definition_id!r} is active; unpublish it before deleting"
            )
        self._repo.delete_draft(definition_id)
        logger.info("Definition deleted", extra={"definition_id": definition_id})

    # -- graph editing ------------------------------------------------------

    def add_node(self, definition_id: str, node: Node | Mapping[str, Any]) -> Node:
        node = self._coerce(Node, node)

        def mutate(draft: DefinitionDraft) -> None:
            if any(n.id == node.id for n in draft.nodes):
                raise InvalidStateError(f"Node {node.id!r} already exists")
            draft.nodes.append(node)

        self._edit(definition_id, mutate)
        return node

    def update_node(self, definition_id: str, node_id: str, changes: Mapping[str, Any]) -> Node:
        updated: list[Node] = []

        def mutate(draft: DefinitionDraft) -> None:
            index = self._index_of(draft.nodes, node_id, "Node")
            current = draft.nodes[index].model_dump(mode="json")
            merged = {**current, **dict(changes), "id": node_id}
            if "config" in changes and isinstance(changes["config"], Mapping):
                merged["config"] = {**current["config"], **dict(changes["config"])}
                if "type" in changes and "type" not in changes["config"]:
                    merged["config"]["type"] = changes["type"]
            elif "type" in changes and changes["type"] != current["type"]:
                merged["config"] = None
            draft.nodes[index] = self._coerce(Node, merged)
            updated.append(draft.nodes[index])

        self._edit(definition_id, mutate)
        return updated[0]

    def delete_node(self, definition_id: str, node_id: str) -> None:
        """Remove a node together with every edge touching it."""

        def mutate(draft: DefinitionDraft) -> None:
            index = self._index_of(draft.nodes, node_id, "Node")
            del draft.nodes[index]
            draft.edges = [e for e in draft.edges if node_id not in (e.source, e.target)]

        self._edit(definition_id, mutate)

    def add_edge(self, definition_id: str, edge: Edge | Mapping[str, Any]) -> Edge:
        if isinstance(edge, Mapping) and "id" not in edge:
            edge = {**edge, "id": _new_id("edge")}
        edge = self._coerce(Edge, edge)

        def mutate(draft: DefinitionDraft) -> None:
            if any(e.id == edge.id for e in draft.edges):
                raise InvalidStateError(f"Edge {edge.id!r} already exists")
            self._check_endpoints(draft, edge)
            draft.edges.append(edge)

        self._edit(definition_id, mutate)
        return edge

    def update_edge(self, definition_id: str, edge_id: str, changes: Mapping[str, Any]) -> Edge:
        updated: list[Edge] = []

        def mutate(draft: DefinitionDraft) -> None:
            index = self._index_of(draft.edges, edge_id, "Edge")
            merged = {**draft.edges[index].model_dump(mode="json"), **dict(changes), "id": edge_id}
            edge = self._coerce(Edge, merged)
            self._check_endpoints(draft, edge)
            draft.edges[index] = edge
            updated.append(edge)

        self._edit(definition_id, mutate)
        return updated[0]

    def delete_edge(self, definition_id: str, edge_id: str) -> None:
        def mutate(draft: DefinitionDraft) -> None:
            del draft.edges[self._index_of(draft.edges, edge_id, "Edge")]

        self._edit(definition_id, mutate)

    def add_trigger(self, definition_id: str, trigger: Trigger | Mapping[str, Any]) -> Trigger:
        if isinstance(trigger, Mapping) and "id" not in trigger:
            trigger = {**trigger, "id": _new_id("trg")}
        trigger = self._coerce(Trigger, trigger)

        def mutate(draft: DefinitionDraft) -> None:
            if any(t.id == trigger.id for t in draft.triggers):
                raise InvalidStateError(f"Trigger {trigger.id!r} already exists")
            draft.triggers.append(trigger)

        self._edit(definition_id, mutate)
        return trigger

    def update_trigger(
        self, definition_id: str, trigger_id: str, changes: Mapping[str, Any]
    ) -> Trigger:
        updated: list[Trigger] = []

        def mutate(draft: DefinitionDraft) -> None:
            index = self._index_of(draft.triggers, trigger_id, "Trigger")
            merged = {**draft.triggers[index].model_dump(mode="json"), **dict(changes), "id": trigger_id}
            draft.triggers[index] = self._coerce(Trigger, merged)
            updated.append(draft.triggers[index])

        self._edit(definition_id, mutate)
        return updated[0]

    def delete_trigger(self, definition_id: str, trigger_id: str) -> None:
        def mutate(draft: DefinitionDraft) -> None:
            del draft.triggers[self._index_of(draft.triggers, trigger_id, "Trigger")]

        self._edit(definition_id, mutate)

    def set_variables(
        self, definition_id: str, variables: Iterable[Variable | Mapping[str, Any]]
    ) -> list[Variable]:
        parsed = [self._coerce(Variable, v) for v in variables]

        def mutate(draft: DefinitionDraft) -> None:
            draft.variables = parsed

        self._edit(definition_id, mutate)
        return parsed

    # -- lifecycle ----------------------------------------------------------

    def validate(self, definition_id: str) -> list[str]:
        draft = self.get_draft(definition_id)
        return validate_graph(draft.nodes, draft.edges, draft.variables)

    def publish(self, definition_id: str, *, published_by: str = "system") -> Definition:
        """Freeze the draft into the next ACTIVE version.

        The previously ACTIVE version, if any, is archived but kept.
        """

        draft = self.get_draft(definition_id)
        if draft.status == DefinitionStatus.ARCHIVED:
            raise InvalidStateError(f"Definition {definition_id!r} is archived")

        violations = validate_graph(draft.nodes, draft.edges, draft.variables)
        if violations:
            logger.warning(
                "Definition failed validation",
                extra={"definition_id": definition_id, "violations": violations},
            )
            raise ValidationError(violations)

        self._retire_versions(definition_id)

        now = self._clock()
        version = draft.latest_version + 1
        definition = Definition(
            id=draft.id,
            name=draft.name,
            description=draft.description,
            version=version,
            status=DefinitionStatus.ACTIVE,
            nodes=tuple(draft.nodes),
            edges=tuple(draft.edges),
            triggers=tuple(draft.triggers),
            variables=tuple(draft.variables),
            settings=draft.settings,
            published_at=now,
            published_by=published_by,
        )
        self._repo.save_version(definition)

        draft.latest_version = version
        draft.status = DefinitionStatus.ACTIVE
        draft.updated_at = now
        self._repo.save_draft(draft)

        logger.info(
            "Definition published",
            extra={"definition_id": definition_id, "version": version, "by": published_by},
        )
        return definition

    def unpublish(self, definition_id: str) -> DefinitionDraft:
        """Stop new instances from starting; running ones are unaffected."""

        draft = self.get_draft(definition_id)
        if draft.status != DefinitionStatus.ACTIVE:
            raise InvalidStateError(f"Definition {definition_id!r} is not published")
        self._retire_versions(definition_id)
        draft.status = DefinitionStatus.DRAFT
        draft.updated_at = self._clock()
        self._repo.save_draft(draft)
        logger.info("Definition unpublished", extra={"definition_id": definition_id})
        return draft

    def archive(self, definition_id: str) -> DefinitionDraft:
        draft = self.get_draft(definition_id)
        self._retire_versions(definition_id)
        draft.status = DefinitionStatus.ARCHIVED
        draft.updated_at = self._clock()
        self._repo.save_draft(draft)
        logger.info("Definition archived", extra={"definition_id": definition_id})
        return draft

    def get(self, definition_id: str, version: int | None = None) -> Definition:
        """Return a published snapshot; without ``version`` the ACTIVE one."""

        if version is not None:
            definition = self._repo.get_version(definition_id, version)
            if definition is None:
                raise NotFoundError(f"Definition {definition_id!r} version {version} not found")
            return definition

        for definition in reversed(self._repo.list_versions(definition_id)):
            if definition.status == DefinitionStatus.ACTIVE:
                return definition
        raise NotFoundError(f"Definition {definition_id!r} has no active version")

    def list_versions(self, definition_id: str) -> list[Definition]:
        self.get_draft(definition_id)
        return self._repo.list_versions(definition_id)

    def active_definitions(self) -> list[Definition]:
        active: list[Definition] = []
        for draft in self._repo.list_drafts():
            if draft.status == DefinitionStatus.ACTIVE:
                active.append(self.get(draft.id))
        return active

    # -- helpers ------------------------------------------------------------

    def _edit(
        self, definition_id: str, mutate: Callable[[DefinitionDraft], None]
    ) -> DefinitionDraft:
        draft = self.get_draft(definition_id)
        if draft.status == DefinitionStatus.ARCHIVED:
            raise InvalidStateError(f"Definition {definition_id!r} is archived")
        mutate(draft)
        draft.updated_at = self._clock()
        self._repo.save_draft(draft)
        return draft

    def _retire_versions(self, definition_id: str) -> None:
        for version in self._repo.list_versions(definition_id):
            if version.status == DefinitionStatus.ACTIVE:
                self._repo.save_version(
                    version.model_copy(update={"status": DefinitionStatus.ARCHIVED})
                )

    @staticmethod
    def _check_endpoints(draft: DefinitionDraft, edge: Edge) -> None:
        node_ids = {n.id for n in draft.nodes}
        missing = [end for end in (edge.source, edge.target) if end not in node_ids]
        if missing:
            raise ValidationError(
                [f"Edge {edge.id!r} references unknown node {m!r}" for m in missing]
            )

    @staticmethod
    def _index_of(items: list[Any], item_id: str, kind: str) -> int:
        for index, item in enumerate(items):
            if item.id == item_id:
                return index
        raise NotFoundError(f"{kind} {item_id!r} not found")

    @staticmethod
    def _coerce(model: Any, value: Any) -> Any:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(_pydantic_violations(e)) from e
