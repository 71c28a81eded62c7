"""Retry / timeout wrapper around a single node executor invocation.

Attempts = 1 + retries.  Each attempt runs under ``asyncio.wait_for`` with the
node's deadline; an expired deadline counts as a failed attempt.  Between
attempts the wrapper sleeps for the provider's Retry-After hint when one was
given, else ``RETRY_DELAY_MS * RETRY_BACKOFF_MULTIPLIER ** n`` capped at
``RETRY_MAX_DELAY_MS``.  Non-retryable errors and an open per-run failure
breaker end the loop early.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from flowengine.config import settings
from flowengine.runtime.errors import NodeExecutionError, NodeTimeoutError, ProviderError
from flowengine.runtime.state import NodeResult, now_ms
from flowengine.utils.metrics import record_node_timeout, record_retry_attempt
from flowengine.utils.run_cancel import RunCancelledError

logger = logging.getLogger("flowengine.runtime.retry")


class RunFailureBreaker:
    """Counts failed attempts across one run; once open, nothing is retried."""

    def __init__(self, threshold: int | None = None) -> None:
        self.threshold = settings.RUN_FAILURE_CIRCUIT_THRESHOLD if threshold is None else threshold
        self.failures = 0

    def record_failure(self) -> None:
        self.failures += 1

    @property
    def is_open(self) -> bool:
        return self.threshold > 0 and self.failures >= self.threshold


@dataclass
class AttemptOutcome:
    ok: bool
    result: NodeResult | None = None
    error: NodeExecutionError | None = None
    retries: int = 0
    start_ms: int = 0
    end_ms: int = 0


def retry_delay_ms(attempt: int, error: Exception | None = None) -> int:
    """Delay before retry number *attempt* (0-based)."""
    if isinstance(error, ProviderError) and error.retry_after_ms:
        return min(error.retry_after_ms, settings.RETRY_AFTER_CAP_MS)
    delay = settings.RETRY_DELAY_MS * (settings.RETRY_BACKOFF_MULTIPLIER ** attempt)
    return int(min(delay, settings.RETRY_MAX_DELAY_MS))


def _as_node_error(exc: BaseException) -> NodeExecutionError:
    if isinstance(exc, NodeExecutionError):
        return exc
    if isinstance(exc, RunCancelledError):
        return NodeExecutionError(str(exc) or "run cancelled", retryable=False)
    message = str(exc) or exc.__class__.__name__
    return NodeExecutionError(message)


def _as_result(value: Any) -> NodeResult:
    return value if isinstance(value, NodeResult) else NodeResult(value=value)


async def execute_with_retry(spec, node, inputs, ctx) -> AttemptOutcome:
    """Run ``spec.execute(node, inputs, ctx)`` with deadline and retry budget.

    Never raises for executor failures; the outcome carries the last error.
    """
    max_retries = spec.retries_for(node)
    timeout_ms = spec.timeout_ms_for(node)
    breaker = ctx.breaker
    start = now_ms()
    attempt = 0

    while True:
        try:
            coro = spec.execute(node, inputs, ctx)
            if timeout_ms:
                try:
                    value = await asyncio.wait_for(coro, timeout=timeout_ms / 1000.0)
                except asyncio.TimeoutError:
                    record_node_timeout(spec.spec_id, node.id, timeout_ms)
                    raise NodeTimeoutError(node.id, timeout_ms)
            else:
                value = await coro
            return AttemptOutcome(
                ok=True, result=_as_result(value), retries=attempt, start_ms=start, end_ms=now_ms()
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = _as_node_error(exc)
            if breaker is not None:
                breaker.record_failure()

            stop_reason = None
            if attempt >= max_retries:
                stop_reason = "retry budget exhausted"
            elif not error.retryable:
                stop_reason = "error is not retryable"
            elif breaker is not None and breaker.is_open:
                stop_reason = "run failure breaker open"

            if stop_reason:
                logger.warning(
                    "Node %s (%s) failed after %d attempt(s), %s: %s",
                    node.id, spec.spec_id, attempt + 1, stop_reason, error,
                )
                return AttemptOutcome(
                    ok=False, error=error, retries=attempt, start_ms=start, end_ms=now_ms()
                )

            delay_ms = retry_delay_ms(attempt, error)
            record_retry_attempt(spec.spec_id)
            logger.warning(
                "Node %s (%s) failed (attempt %d/%d), retrying after %dms: %s",
                node.id, spec.spec_id, attempt + 1, max_retries + 1, delay_ms, error,
            )
            await asyncio.sleep(delay_ms / 1000.0)
            attempt += 1
