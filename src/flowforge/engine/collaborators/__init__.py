"""Services the engine consumes but does not own."""

from flowforge.engine.collaborators.connectors import (
    CallableConnectorInvoker,
    ConnectorEndpoint,
    ConnectorInvoker,
    HttpConnectorInvoker,
    load_connector_endpoints,
)
from flowforge.engine.collaborators.decision_tables import (
    DecisionRule,
    DecisionTable,
    DecisionTableService,
    InMemoryDecisionTableService,
    evaluate_table,
    load_decision_tables,
)
from flowforge.engine.collaborators.notifier import LoggingNotifier, Notifier, SmtpNotifier

__all__ = [
    "CallableConnectorInvoker",
    "ConnectorEndpoint",
    "ConnectorInvoker",
    "DecisionRule",
    "DecisionTable",
    "DecisionTableService",
    "HttpConnectorInvoker",
    "InMemoryDecisionTableService",
    "LoggingNotifier",
    "Notifier",
    "SmtpNotifier",
    "evaluate_table",
    "load_connector_endpoints",
    "load_decision_tables",
]
