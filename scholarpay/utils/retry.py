from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from scholarpay.domain.errors import GatewayError

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Only network-level failures and 5xx answers are worth another try."""
    return isinstance(exc, GatewayError) and exc.transient


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "transient gateway failure; retrying",
        extra={
            "attempt": state.attempt_number,
            "event": getattr(exc, "operation", None),
            "error": str(exc) if exc else None,
        },
    )


def gateway_retrying(attempts: int = 3, delay_seconds: float = 1.0) -> AsyncRetrying:
    """Bounded, fixed-delay retry policy for caller-side gateway calls.

    Usage::

        async for attempt in gateway_retrying(3, 1.0):
            with attempt:
                result = await client.get_transaction_status(tracking_id)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )
