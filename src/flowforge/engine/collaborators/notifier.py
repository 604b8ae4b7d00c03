"""Notification delivery for email nodes and SLA escalations."""

from __future__ import annotations

import json
import logging
import smtplib
from collections.abc import Mapping
from email.message import EmailMessage
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, template: str, recipient: str, variables: Mapping[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes every notification to the log and keeps it for inspection."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, template: str, recipient: str, variables: Mapping[str, Any]) -> None:
        self.sent.append((template, recipient, dict(variables)))
        logger.info(
            "Notification %s -> %s",
            template,
            recipient,
            extra={"template": template, "recipient": recipient},
        )


class SmtpNotifier:
    """Sends a plain-text email per notification.

    Rendering is deliberately minimal: the subject names the template and the
    body lists the variables. Real templating belongs to the notification
    service that owns the templates.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout_seconds

    def build_message(
        self, template: str, recipient: str, variables: Mapping[str, Any]
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = recipient
        msg["Subject"] = f"[FlowForge] {template}"
        msg.set_content(json.dumps(dict(variables), indent=2, default=str, ensure_ascii=False))
        return msg

    def send(self, template: str, recipient: str, variables: Mapping[str, Any]) -> None:
        msg = self.build_message(template, recipient, variables)
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            if self._use_tls:
                server.starttls()
            if self._username:
                server.login(self._username, self._password or "")
            server.send_message(msg)
        logger.info("Email sent", extra={"template": template, "recipient": recipient})
