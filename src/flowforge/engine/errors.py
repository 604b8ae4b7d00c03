"""Domain errors raised by the workflow engine.

Every error the engine raises on purpose derives from :class:`FlowForgeError` so
that adapters (CLI, REST) can map them to exit codes or HTTP statuses in one
place.
"""

from __future__ import annotations


class FlowForgeError(Exception):
    """Base class for engine errors."""


class ValidationError(FlowForgeError):
    """A definition graph breaks one or more structural invariants.

    All violations are collected; the message lists every one of them.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Definition validation failed: " + "; ".join(self.violations))


class EvaluationError(FlowForgeError):
    """An expression could not be parsed or evaluated."""


class ConnectorError(FlowForgeError):
    """A connector call failed.

    ``retryable`` is a hint from the invoker; non-retryable errors skip the
    remaining attempts of the retry policy.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class InvalidStateError(FlowForgeError):
    """An operation was attempted on a record not in the required state."""


class RoutingError(FlowForgeError):
    """A decision node has no matching outgoing edge."""

    def __init__(self, message: str, *, node_id: str) -> None:
        super().__init__(message)
        self.node_id = node_id


class NotFoundError(FlowForgeError, KeyError):
    """A definition, instance or task does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Not found"
