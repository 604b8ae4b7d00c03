"""Connector invokers used by action nodes."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

import requests
from pydantic import BaseModel, Field

from flowforge.engine.errors import ConnectorError

logger = logging.getLogger(__name__)


class ConnectorInvoker(Protocol):
    """Executes one operation on an external system.

    Implementations raise :class:`ConnectorError` on failure; the engine owns
    retries.
    """

    def execute(
        self, connector_ref: str, operation_ref: str, inputs: Mapping[str, Any]
    ) -> dict[str, Any]: ...


class ConnectorEndpoint(BaseModel):
    base_url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=30.0, gt=0)


def load_connector_endpoints(path: Path) -> dict[str, ConnectorEndpoint]:
    """Read ``{connector_ref: {base_url, headers, timeout_seconds}}`` from JSON."""

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Connector file {path} must contain a JSON object")
    return {name: ConnectorEndpoint.model_validate(item) for name, item in raw.items()}


class HttpConnectorInvoker:
    """POSTs the inputs as JSON to ``{base_url}/{operation_ref}``.

    Connection failures, timeouts, 429 and 5xx responses are retryable; other
    4xx responses are not. A JSON object body becomes the outputs.
    """

    def __init__(
        self,
        endpoints: Mapping[str, ConnectorEndpoint],
        *,
        session: requests.Session | None = None,
    ) -> None:
        self._endpoints = dict(endpoints)
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "User-Agent": "flowforge-engine"}
        )

    def execute(
        self, connector_ref: str, operation_ref: str, inputs: Mapping[str, Any]
    ) -> dict[str, Any]:
        endpoint = self._endpoints.get(connector_ref)
        if endpoint is None:
            raise ConnectorError(f"Unknown connector {connector_ref!r}", retryable=False)

        url = f"{endpoint.base_url.rstrip('/')}/{operation_ref.lstrip('/')}"
        try:
            resp = self._session.post(
                url,
                json=dict(inputs),
                headers=endpoint.headers or None,
                timeout=endpoint.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ConnectorError(f"{connector_ref}.{operation_ref}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ConnectorError(
                f"{connector_ref}.{operation_ref}: HTTP {resp.status_code}", retryable=True
            )
        if resp.status_code >= 400:
            raise ConnectorError(
                f"{connector_ref}.{operation_ref}: HTTP {resp.status_code} {resp.text[:200]}",
                retryable=False,
            )

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise ConnectorError(
                f"{connector_ref}.{operation_ref}: response is not JSON", retryable=False
            ) from e
        if not isinstance(data, dict):
            return {"result": data}
        logger.debug(
            "Connector call succeeded",
            extra={"connector": connector_ref, "operation": operation_ref, "status": resp.status_code},
        )
        return data


Operation = Callable[[Mapping[str, Any]], Mapping[str, Any] | None]


class CallableConnectorInvoker:
    """In-process connector registry, keyed by ``(connector, operation)``."""

    def __init__(self) -> None:
        self._operations: dict[tuple[str, str], Operation] = {}

    def register(self, connector_ref: str, operation_ref: str, fn: Operation) -> None:
        self._operations[(connector_ref, operation_ref)] = fn

    def execute(
        self, connector_ref: str, operation_ref: str, inputs: Mapping[str, Any]
    ) -> dict[str, Any]:
        fn = self._operations.get((connector_ref, operation_ref))
        if fn is None:
            raise ConnectorError(
                f"Unknown operation {connector_ref}.{operation_ref}", retryable=False
            )
        result = fn(dict(inputs))
        return dict(result or {})
