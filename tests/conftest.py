"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from flowforge.engine.collaborators import CallableConnectorInvoker, LoggingNotifier
from flowforge.engine.config import EngineConfig, SlaConfig, StorageConfig
from flowforge.engine.definitions import Definition
from flowforge.engine.service import WorkflowService


class FakeClock:
    """A clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fixed clock starting at a known instant."""
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def connectors() -> CallableConnectorInvoker:
    """Provide an empty in-process connector registry."""
    return CallableConnectorInvoker()


@pytest.fixture
def notifier() -> LoggingNotifier:
    """Provide a notifier that records what it sends."""
    return LoggingNotifier()


@pytest.fixture
def engine_config(temp_state_dir: Path) -> EngineConfig:
    """Provide a test engine configuration."""
    return EngineConfig(
        log_level="DEBUG",
        debug=True,
        max_steps_per_advance=200,
        storage=StorageConfig(path=temp_state_dir),
        sla=SlaConfig(sweep_interval_seconds=60),
    )


@pytest.fixture
def service(
    connectors: CallableConnectorInvoker,
    notifier: LoggingNotifier,
    engine_config: EngineConfig,
    clock: FakeClock,
) -> WorkflowService:
    """Provide an in-memory service whose retries never really sleep."""
    return WorkflowService.in_memory(
        connectors=connectors,
        notifier=notifier,
        config=engine_config,
        clock=clock,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def deploy(service: WorkflowService) -> Callable[..., Definition]:
    """Import a definition document and publish it in one step."""

    def _deploy(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        *,
        definition_id: str = "proc",
        **extra: Any,
    ) -> Definition:
        service.import_definition(
            {"id": definition_id, "name": definition_id, "nodes": nodes, "edges": edges, **extra}
        )
        return service.publish(definition_id, published_by="tester")

    return _deploy


def approval(node_id: str, assignee: str = "alice", **config: Any) -> dict[str, Any]:
    """An approval node document."""
    return {
        "id": node_id,
        "type": "approval",
        "config": {"title": node_id, "assignee": assignee, **config},
    }


def edge(source: str, target: str, **extra: Any) -> dict[str, Any]:
    return {"id": f"{source}-{target}", "source": source, "target": target, **extra}


START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}
