"""Bounded retries for connector calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from flowforge.engine.definitions.models import RetryPolicy
from flowforge.engine.errors import ConnectorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay_ms(policy: RetryPolicy, attempt: int) -> int:
    """Delay before retry number ``attempt`` (1 = the first retry)."""

    if attempt < 1:
        return 0
    if policy.backoff == "fixed":
        delay = policy.initial_delay_ms
    elif policy.backoff == "linear":
        delay = policy.initial_delay_ms * attempt
    else:
        delay = policy.initial_delay_ms * 2 ** (attempt - 1)
    return min(delay, policy.max_delay_ms)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    log_extra: dict[str, object] | None = None,
) -> T:
    """Run ``fn`` until it succeeds or the policy is exhausted.

    Only :class:`ConnectorError` is retried, and only while it is marked
    retryable. The last error is re-raised.
    """

    attempts = policy.max_attempts if policy.enabled else 1
    extra = dict(log_extra or {})
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConnectorError as e:
            if not e.retryable or attempt == attempts:
                logger.warning(
                    "Connector call failed after %s attempt(s): %s",
                    attempt,
                    e,
                    extra={**extra, "attempt": attempt},
                )
                raise
            delay_ms = backoff_delay_ms(policy, attempt)
            logger.info(
                "Connector call failed, retrying in %sms",
                delay_ms,
                extra={**extra, "attempt": attempt, "error": str(e)},
            )
            sleep(delay_ms / 1000)
    raise AssertionError("unreachable")
