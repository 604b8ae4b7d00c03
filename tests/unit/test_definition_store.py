"""Tests for definition authoring, validation and publishing."""

from __future__ import annotations

import pytest

from flowforge.engine.definitions import (
    DefinitionStatus,
    DefinitionStore,
    Edge,
    Node,
    NodeType,
    validate_graph,
)
from flowforge.engine.errors import InvalidStateError, NotFoundError, ValidationError
from flowforge.engine.persistence import InMemoryDefinitionRepository


@pytest.fixture
def store() -> DefinitionStore:
    return DefinitionStore(InMemoryDefinitionRepository())


def test_create_seeds_start_wired_to_end(store: DefinitionStore) -> None:
    draft = store.create("Purchase approval", created_by="alice")

    assert draft.status == DefinitionStatus.DRAFT
    assert [n.type for n in draft.nodes] == [NodeType.START, NodeType.END]
    assert [(e.source, e.target) for e in draft.edges] == [("start", "end")]
    assert store.validate(draft.id) == []


def test_create_with_existing_id_is_rejected(store: DefinitionStore) -> None:
    store.create("A", definition_id="proc")

    with pytest.raises(InvalidStateError):
        store.create("B", definition_id="proc")


def test_publish_creates_increasing_immutable_versions(store: DefinitionStore) -> None:
    draft = store.create("Proc", definition_id="proc")

    v1 = store.publish(draft.id, published_by="alice")
    store.add_node("proc", {"id": "notify", "type": "email", "config": {"template": "t", "to": "x@y"}})
    store.update_edge("proc", "edge-start-end", {"target": "notify"})
    store.add_edge("proc", {"source": "notify", "target": "end"})
    v2 = store.publish("proc")

    assert (v1.version, v2.version) == (1, 2)
    assert v2.status == DefinitionStatus.ACTIVE
    assert store.get("proc", 1).status == DefinitionStatus.ARCHIVED
    assert len(store.get("proc", 1).nodes) == 2
    assert store.get("proc").version == 2
    assert [d.version for d in store.list_versions("proc")] == [1, 2]
    assert store.get_draft("proc").latest_version == 2


def test_published_version_matches_the_draft(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")
    store.add_node("proc", {"id": "notify", "type": "email", "config": {"template": "t", "to": "x@y"}})
    store.add_edge("proc", {"id": "to-notify", "source": "start", "target": "notify", "label": "cc"})
    store.add_trigger("proc", {"id": "form", "type": "form", "config": {"form_id": "po"}})
    store.set_variables("proc", [{"name": "amount", "type": "number", "default": 0}])
    draft = store.get_draft("proc")

    store.publish("proc")
    published = store.get("proc", 1)

    def dump(items: object) -> list[dict[str, object]]:
        return [item.model_dump(mode="json") for item in items]  # type: ignore[attr-defined]

    assert dump(published.nodes) == dump(draft.nodes)
    assert dump(published.edges) == dump(draft.edges)
    assert dump(published.triggers) == dump(draft.triggers)
    assert dump(published.variables) == dump(draft.variables)


def test_publish_reports_every_violation(store: DefinitionStore) -> None:
    store.create("Broken", definition_id="proc")
    store.add_node("proc", {"id": "orphan", "type": "approval", "config": {"assignee": ""}})
    store.add_node("proc", {"id": "check", "type": "decision"})
    store.add_edge("proc", {"source": "start", "target": "check"})

    with pytest.raises(ValidationError) as exc_info:
        store.publish("proc")

    violations = exc_info.value.violations
    assert any("'orphan' is not reachable" in v for v in violations)
    assert any("approval node 'orphan': approval has no assignee" in v for v in violations)
    assert any("decision needs a condition" in v for v in violations)
    assert any("decision has no outgoing edges" in v for v in violations)
    assert store.get_draft("proc").latest_version == 0


def test_validate_graph_structure() -> None:
    nodes = [
        Node(id="a", type=NodeType.START),
        Node(id="b", type=NodeType.START),
        Node(id="b", type=NodeType.EMAIL, config={"template": "t", "to": "x"}),
    ]
    edges = [Edge(id="e1", source="a", target="missing", condition="amount >")]

    violations = validate_graph(nodes, edges)

    assert "Duplicate node id 'b'" in violations
    assert "Definition can only have one start node (found 2)" in violations
    assert "Definition must have at least one end node" in violations
    assert "Edge 'e1' references unknown node 'missing'" in violations
    assert any(v.startswith("Edge 'e1' condition: invalid expression") for v in violations)


def test_delete_node_removes_its_edges(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")
    store.add_node("proc", {"id": "mid", "type": "email", "config": {"template": "t", "to": "x"}})
    store.add_edge("proc", {"source": "start", "target": "mid"})
    store.add_edge("proc", {"source": "mid", "target": "end"})

    store.delete_node("proc", "mid")

    draft = store.get_draft("proc")
    assert [n.id for n in draft.nodes] == ["start", "end"]
    assert [e.id for e in draft.edges] == ["edge-start-end"]


def test_add_edge_checks_endpoints(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")

    with pytest.raises(ValidationError):
        store.add_edge("proc", {"source": "start", "target": "nowhere"})


def test_unpublish_and_archive(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")
    store.publish("proc")

    assert store.unpublish("proc").status == DefinitionStatus.DRAFT
    with pytest.raises(InvalidStateError):
        store.unpublish("proc")

    store.publish("proc")
    archived = store.archive("proc")

    assert archived.status == DefinitionStatus.ARCHIVED
    assert all(v.status == DefinitionStatus.ARCHIVED for v in store.list_versions("proc"))
    assert store.active_definitions() == []
    with pytest.raises(InvalidStateError):
        store.add_node("proc", {"id": "x", "type": "end"})
    with pytest.raises(InvalidStateError):
        store.publish("proc")


def test_active_definition_cannot_be_deleted(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")
    store.publish("proc")

    with pytest.raises(InvalidStateError):
        store.delete("proc")

    store.unpublish("proc")
    store.delete("proc")
    with pytest.raises(NotFoundError):
        store.get_draft("proc")


def test_import_maps_schema_errors_to_violations(store: DefinitionStore) -> None:
    with pytest.raises(ValidationError) as exc_info:
        store.import_draft({"id": "proc", "name": "x", "nodes": [{"id": "n", "type": "teleport"}]})

    assert exc_info.value.violations


def test_list_filters_by_status_and_search(store: DefinitionStore) -> None:
    store.create("Purchase order", definition_id="po")
    store.create("Leave request", definition_id="leave")
    store.publish("po")

    assert [d.id for d in store.list(status="active")] == ["po"]
    assert [d.id for d in store.list(search="LEAVE")] == ["leave"]


def test_get_unknown_version_raises(store: DefinitionStore) -> None:
    store.create("Proc", definition_id="proc")

    with pytest.raises(NotFoundError):
        store.get("proc")
    store.publish("proc")
    with pytest.raises(NotFoundError):
        store.get("proc", 7)
