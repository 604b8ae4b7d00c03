"""Tests for the REST API."""

from __future__ import annotations

from typing import Any

import pytest
from conftest import END, START, FakeClock, approval, edge
from fastapi.testclient import TestClient

from flowforge.engine.service import WorkflowService
from flowforge.server import create_app
from flowforge.server.config import ServerSettings

API = "/api/v1"


@pytest.fixture
def client(service: WorkflowService) -> TestClient:
    app = create_app(service=service, settings=ServerSettings(sla_sweep_enabled=False))
    return TestClient(app)


def _import_review(client: TestClient, **extra: Any) -> dict[str, Any]:
    document = {
        "id": "proc",
        "name": "Purchase approval",
        "nodes": [START, approval("review", timeout_days=1), END],
        "edges": [edge("start", "review"), edge("review", "end")],
        **extra,
    }
    resp = client.post(f"{API}/definitions/import", json=document)
    assert resp.status_code == 201
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get(f"{API}/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_definition_authoring_flow(client: TestClient) -> None:
    resp = client.post(f"{API}/definitions", json={"name": "Leave request"})
    assert resp.status_code == 201
    definition_id = resp.json()["id"]

    resp = client.post(
        f"{API}/definitions/{definition_id}/nodes",
        json={"id": "notify", "type": "email", "config": {"template": "t", "to": "hr@x"}},
    )
    assert resp.status_code == 201
    assert resp.json()["config"]["type"] == "email"

    resp = client.patch(
        f"{API}/definitions/{definition_id}/edges/edge-start-end", json={"target": "notify"}
    )
    assert resp.json()["target"] == "notify"

    resp = client.post(f"{API}/definitions/{definition_id}/validate")
    report = resp.json()
    assert report["valid"] is False
    assert any("'end' is not reachable" in v for v in report["violations"])

    client.post(f"{API}/definitions/{definition_id}/edges", json={"source": "notify", "target": "end"})
    resp = client.post(f"{API}/definitions/{definition_id}/publish", json={"published_by": "ann"})
    assert resp.status_code == 200
    assert resp.json()["version"] == 1
    assert resp.json()["published_by"] == "ann"

    resp = client.get(f"{API}/definitions/{definition_id}/versions")
    assert [d["version"] for d in resp.json()] == [1]
    assert client.get(f"{API}/definitions/{definition_id}/active").json()["status"] == "active"


def test_publish_invalid_definition_returns_violations(client: TestClient) -> None:
    _import_review(client, nodes=[START, approval("review", ""), END])

    resp = client.post(f"{API}/definitions/proc/publish")

    assert resp.status_code == 422
    assert any("approval has no assignee" in v for v in resp.json()["violations"])


def test_approval_round_trip_over_http(client: TestClient) -> None:
    _import_review(client)
    client.post(f"{API}/definitions/proc/publish")

    resp = client.post(f"{API}/definitions/proc/instances", json={"input": {"amount": 120}})
    assert resp.status_code == 201
    instance = resp.json()
    assert instance["status"] == "running"

    [task] = client.get(f"{API}/tasks", params={"assignee": "alice"}).json()
    assert task["status"] == "pending"

    assert client.post(f"{API}/tasks/{task['id']}/claim", json={"user_id": "alice"}).status_code == 200
    resp = client.post(
        f"{API}/tasks/{task['id']}/complete",
        json={"user_id": "bob", "outcome": "approved"},
    )
    assert resp.status_code == 409

    resp = client.post(
        f"{API}/tasks/{task['id']}/complete",
        json={"user_id": "alice", "outcome": "approved", "data": {"po": "PO-1"}},
    )
    assert resp.json()["status"] == "completed"

    done = client.get(f"{API}/instances/{instance['id']}").json()
    assert done["status"] == "completed"
    assert done["variables"]["po"] == "PO-1"
    assert [i["id"] for i in client.get(f"{API}/instances", params={"status": "completed"}).json()] == [
        instance["id"]
    ]


def test_unknown_records_return_404(client: TestClient) -> None:
    assert client.get(f"{API}/definitions/nope").status_code == 404
    assert client.get(f"{API}/instances/nope").status_code == 404
    assert client.get(f"{API}/tasks/nope").status_code == 404
    assert client.post(f"{API}/definitions/nope/instances", json={}).status_code == 404


def test_invalid_state_returns_409(client: TestClient) -> None:
    _import_review(client)
    client.post(f"{API}/definitions/proc/publish")

    assert client.delete(f"{API}/definitions/proc").status_code == 409
    instance = client.post(f"{API}/definitions/proc/instances", json={}).json()
    assert client.post(f"{API}/instances/{instance['id']}/resume", json={}).status_code == 409


def test_pause_resume_and_cancel(client: TestClient) -> None:
    _import_review(client)
    client.post(f"{API}/definitions/proc/publish")
    instance = client.post(f"{API}/definitions/proc/instances", json={}).json()
    base = f"{API}/instances/{instance['id']}"

    assert client.post(f"{base}/pause", json={"actor": "ops"}).json()["status"] == "paused"
    assert client.post(f"{base}/resume", json={"actor": "ops"}).json()["status"] == "running"
    assert client.post(f"{base}/cancel", json={"actor": "ops"}).json()["status"] == "cancelled"
    assert [t["status"] for t in client.get(f"{base}/tasks").json()] == ["cancelled"]


def test_form_submission_starts_instances(client: TestClient) -> None:
    _import_review(client, triggers=[{"id": "f", "type": "form", "config": {"form_id": "po"}}])
    client.post(f"{API}/definitions/proc/publish")

    resp = client.post(f"{API}/forms/po/submissions", json={"data": {"amount": 7}})

    assert resp.status_code == 200
    [instance] = resp.json()
    assert instance["trigger_type"] == "form"


def test_sla_sweep_endpoint(client: TestClient, clock: FakeClock) -> None:
    _import_review(client)
    client.post(f"{API}/definitions/proc/publish")
    instance = client.post(f"{API}/definitions/proc/instances", json={}).json()
    clock.advance(days=2)

    resp = client.post(f"{API}/sla/sweep")

    assert resp.json()["escalated"] == 1
    assert resp.json()["items"][0]["instance_id"] == instance["id"]


def test_schema_errors_return_422(client: TestClient) -> None:
    resp = client.post(f"{API}/definitions/import", json={"id": "x", "nodes": "nope"})

    assert resp.status_code == 422
    assert resp.json()["violations"]


def test_lifespan_runs_sla_sweeper(service: WorkflowService) -> None:
    app = create_app(service=service, settings=ServerSettings(sla_sweep_enabled=True))

    with TestClient(app) as client:
        assert client.get(f"{API}/health").status_code == 200
        assert app.state.sla_runner.running is True

    assert app.state.sla_runner.running is False
