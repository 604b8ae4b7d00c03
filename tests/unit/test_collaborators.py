"""Tests for connectors, notifiers, decision tables and retries."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest
import requests

import flowforge.engine.collaborators.notifier as notifier_module
from flowforge.engine.collaborators import (
    CallableConnectorInvoker,
    ConnectorEndpoint,
    DecisionRule,
    DecisionTable,
    HttpConnectorInvoker,
    InMemoryDecisionTableService,
    SmtpNotifier,
    evaluate_table,
    load_connector_endpoints,
    load_decision_tables,
)
from flowforge.engine.definitions import RetryPolicy
from flowforge.engine.errors import ConnectorError, EvaluationError, NotFoundError
from flowforge.engine.workflow.retry import backoff_delay_ms, call_with_retry


def _response(status_code: int, body: object = None) -> Mock:
    resp = Mock(spec=requests.Response)
    resp.status_code = status_code
    resp.content = b"" if body is None else json.dumps(body).encode()
    resp.text = resp.content.decode()
    resp.json.return_value = body
    return resp


def _http_invoker(resp: Mock | Exception) -> tuple[HttpConnectorInvoker, Mock]:
    session = Mock(spec=requests.Session)
    session.headers = {}
    if isinstance(resp, Exception):
        session.post.side_effect = resp
    else:
        session.post.return_value = resp
    endpoints = {
        "erp": ConnectorEndpoint(
            base_url="https://erp.example/api/", headers={"X-Key": "k"}, timeout_seconds=5
        )
    }
    return HttpConnectorInvoker(endpoints, session=session), session


# -- connectors ----------------------------------------------------------------


def test_http_invoker_posts_inputs_as_json() -> None:
    invoker, session = _http_invoker(_response(200, {"number": "PO-1"}))

    outputs = invoker.execute("erp", "purchase-orders", {"total": 10})

    assert outputs == {"number": "PO-1"}
    session.post.assert_called_once_with(
        "https://erp.example/api/purchase-orders",
        json={"total": 10},
        headers={"X-Key": "k"},
        timeout=5,
    )
    assert session.headers["User-Agent"] == "flowforge-engine"


def test_http_invoker_wraps_non_object_bodies() -> None:
    invoker, _ = _http_invoker(_response(200, [1, 2]))
    assert invoker.execute("erp", "op", {}) == {"result": [1, 2]}

    invoker, _ = _http_invoker(_response(204))
    assert invoker.execute("erp", "op", {}) == {}


@pytest.mark.parametrize(
    ("status", "retryable"),
    [(500, True), (503, True), (429, True), (400, False), (404, False)],
)
def test_http_invoker_classifies_failures(status: int, retryable: bool) -> None:
    invoker, _ = _http_invoker(_response(status, {"error": "x"}))

    with pytest.raises(ConnectorError) as exc_info:
        invoker.execute("erp", "op", {})

    assert exc_info.value.retryable is retryable


def test_http_invoker_network_errors_are_retryable() -> None:
    invoker, _ = _http_invoker(requests.ConnectionError("refused"))

    with pytest.raises(ConnectorError) as exc_info:
        invoker.execute("erp", "op", {})

    assert exc_info.value.retryable is True


def test_http_invoker_unknown_connector() -> None:
    invoker, session = _http_invoker(_response(200, {}))

    with pytest.raises(ConnectorError) as exc_info:
        invoker.execute("crm", "op", {})

    assert exc_info.value.retryable is False
    session.post.assert_not_called()


def test_load_connector_endpoints(tmp_path: Path) -> None:
    path = tmp_path / "connectors.json"
    path.write_text(json.dumps({"erp": {"base_url": "https://erp"}}), encoding="utf-8")

    endpoints = load_connector_endpoints(path)

    assert endpoints["erp"].base_url == "https://erp"
    assert endpoints["erp"].timeout_seconds == 30


def test_callable_invoker_unknown_operation() -> None:
    invoker = CallableConnectorInvoker()
    invoker.register("erp", "noop", lambda inputs: None)

    assert invoker.execute("erp", "noop", {}) == {}
    with pytest.raises(ConnectorError):
        invoker.execute("erp", "missing", {})


# -- notifier ------------------------------------------------------------------


def test_smtp_notifier_sends_message(monkeypatch: pytest.MonkeyPatch) -> None:
    smtp_cls = MagicMock()
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", smtp_cls)
    notifier = SmtpNotifier(
        host="mail.example", port=2525, sender="ff@example", username="u", password="p"
    )

    notifier.send("approved", "alice@example", {"amount": 5})

    smtp_cls.assert_called_once_with("mail.example", 2525, timeout=30.0)
    server = smtp_cls.return_value.__enter__.return_value
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("u", "p")
    [msg] = server.send_message.call_args.args
    assert msg["To"] == "alice@example"
    assert msg["Subject"] == "[FlowForge] approved"
    assert json.loads(msg.get_content()) == {"amount": 5}


# -- decision tables -----------------------------------------------------------


def _table(hit_policy: str, *rules: DecisionRule, default: str | None = None) -> DecisionTable:
    return DecisionTable(
        id="t", hit_policy=hit_policy, rules=rules, default_outcome=default  # type: ignore[arg-type]
    )


def test_first_hit_policy_and_default() -> None:
    table = _table(
        "FIRST",
        DecisionRule(id="big", when={"amount": "value > 1000"}, outcome="director"),
        DecisionRule(id="mid", when={"amount": "value > 100", "dept": "value == 'it'"}, outcome="it"),
        default="auto",
    )

    assert evaluate_table(table, {"amount": 5000, "dept": "it"}) == "director"
    assert evaluate_table(table, {"amount": 500, "dept": "it"}) == "it"
    assert evaluate_table(table, {"amount": 500, "dept": "hr"}) == "auto"


def test_priority_hit_policy_prefers_highest_priority() -> None:
    table = _table(
        "PRIORITY",
        DecisionRule(id="low", when={"amount": "-"}, outcome="clerk", priority=1),
        DecisionRule(id="high", when={"amount": "amount > 10"}, outcome="manager", priority=5),
    )

    assert evaluate_table(table, {"amount": 50}) == "manager"
    assert evaluate_table(table, {"amount": 5}) == "clerk"


def test_unique_and_any_policies_reject_ambiguity() -> None:
    rules = (
        DecisionRule(id="a", when={"x": "value > 0"}, outcome="one"),
        DecisionRule(id="b", when={"x": "value > 1"}, outcome="two"),
    )

    with pytest.raises(EvaluationError, match="UNIQUE"):
        evaluate_table(_table("UNIQUE", *rules), {"x": 5})
    with pytest.raises(EvaluationError, match="ANY"):
        evaluate_table(_table("ANY", *rules), {"x": 5})
    assert evaluate_table(_table("UNIQUE", *rules), {"x": 1}) == "one"


def test_disabled_rules_are_skipped() -> None:
    table = _table(
        "FIRST",
        DecisionRule(id="off", when={}, outcome="never", enabled=False),
        DecisionRule(id="on", when={}, outcome="always"),
    )

    assert evaluate_table(table, {}) == "always"


def test_table_service_and_file_loading(tmp_path: Path) -> None:
    path = tmp_path / "tables.json"
    path.write_text(
        json.dumps([{"id": "t1", "rules": [{"id": "r", "when": {}, "outcome": "ok"}]}]),
        encoding="utf-8",
    )
    service = InMemoryDecisionTableService(load_decision_tables(path))

    assert service.resolve("t1", {}) == "ok"
    with pytest.raises(NotFoundError):
        service.resolve("t2", {})


# -- retries -------------------------------------------------------------------


def test_backoff_strategies() -> None:
    exponential = RetryPolicy(initial_delay_ms=100, max_delay_ms=350)
    linear = RetryPolicy(backoff="linear", initial_delay_ms=100)
    fixed = RetryPolicy(backoff="fixed", initial_delay_ms=100)

    assert [backoff_delay_ms(exponential, n) for n in (1, 2, 3, 4)] == [100, 200, 350, 350]
    assert [backoff_delay_ms(linear, n) for n in (1, 2, 3)] == [100, 200, 300]
    assert [backoff_delay_ms(fixed, n) for n in (1, 2, 3)] == [100, 100, 100]


def test_call_with_retry_sleeps_between_attempts() -> None:
    sleeps: list[float] = []
    outcomes: list[object] = [ConnectorError("a"), ConnectorError("b"), {"ok": True}]

    def flaky() -> object:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = call_with_retry(flaky, RetryPolicy(max_attempts=3), sleep=sleeps.append)

    assert result == {"ok": True}
    assert sleeps == [1.0, 2.0]


def test_disabled_retry_policy_tries_once() -> None:
    calls: list[int] = []

    def failing() -> None:
        calls.append(1)
        raise ConnectorError("down")

    with pytest.raises(ConnectorError):
        call_with_retry(failing, RetryPolicy(enabled=False), sleep=lambda _: None)

    assert calls == [1]
