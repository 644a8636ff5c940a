from __future__ import annotations

from typing import Any


class PaymentError(Exception):
    """Base class for payment subsystem failures."""


class ValidationError(PaymentError):
    """Order or request data rejected locally, before any gateway call."""


class AuthError(PaymentError):
    """The gateway rejected our consumer credentials."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GatewayError(PaymentError):
    """Non-success response (or transport failure) talking to the gateway.

    ``transient`` marks failures worth a bounded retry: timeouts, connection
    errors and 5xx responses. 4xx responses are business rejections and never
    transient.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        body: Any = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.transient = transient


class ReconciliationError(PaymentError):
    """No local payment matches the reference a notification carried."""


class RefundError(PaymentError):
    """Refund precondition failed or the gateway rejected the refund."""


class IllegalTransitionError(PaymentError):
    """A status change the state machine does not allow."""


class StaleRecordError(PaymentError):
    """The stored record changed since it was read (optimistic version check)."""
