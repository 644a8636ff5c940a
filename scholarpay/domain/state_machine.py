"""Lifecycle rules for a payment record.

Pending is the only state the gateway can move forward; Completed is the only
state a refund can start from. Everything else is terminal.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from .errors import IllegalTransitionError, RefundError
from .models import PaymentRecord
from .statuses import PaymentStatus

_ALLOWED: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(),
}

_REFUND_TARGETS = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})


@dataclass(frozen=True)
class Transition:
    previous: PaymentStatus
    current: PaymentStatus

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class PaymentStateMachine:
    """Applies status changes to a PaymentRecord in place."""

    def __init__(self, refund_window_days: int = 365):
        self.refund_window = timedelta(days=refund_window_days)

    @staticmethod
    def can_transition(source: PaymentStatus, target: PaymentStatus) -> bool:
        return source == target or target in _ALLOWED[source]

    def apply_gateway_status(
        self, payment: PaymentRecord, target: PaymentStatus, *, now: datetime | None = None
    ) -> Transition:
        """Move ``payment`` to the status the gateway reported.

        Pending from the gateway means "no news" and never changes anything.
        """
        previous = payment.status
        if target == PaymentStatus.PENDING or target == previous:
            return Transition(previous, previous)
        if previous.is_terminal:
            raise IllegalTransitionError(
                f"Payment is already {previous.value} and cannot move to {target.value}"
            )
        if target in _REFUND_TARGETS or not self.can_transition(previous, target):
            raise IllegalTransitionError(
                f"Cannot move payment from {previous.value} to {target.value}"
            )
        payment.status = target
        if target == PaymentStatus.COMPLETED and payment.processed_at is None:
            payment.processed_at = now or datetime.now(timezone.utc)
        return Transition(previous, target)

    def check_refund(
        self, payment: PaymentRecord, amount: Decimal, *, now: datetime | None = None
    ) -> PaymentStatus:
        """Validate a refund and return the status it would produce."""
        if payment.status != PaymentStatus.COMPLETED:
            raise RefundError(
                f"Only completed payments can be refunded (status is {payment.status.value})"
            )
        if not payment.confirmation_code:
            raise RefundError("No confirmation code found for this payment")
        if amount <= 0:
            raise RefundError("Refund amount must be positive")
        remaining = payment.refundable_amount
        if amount > remaining:
            raise RefundError(f"Refund amount {amount} exceeds refundable amount {remaining}")
        if payment.created_at is not None:
            moment = now or datetime.now(timezone.utc)
            if moment - payment.created_at > self.refund_window:
                raise RefundError("Payment is outside the refund window")
        if amount >= remaining:
            return PaymentStatus.REFUNDED
        return PaymentStatus.PARTIALLY_REFUNDED

    def apply_refund(
        self, payment: PaymentRecord, amount: Decimal, *, now: datetime | None = None
    ) -> Transition:
        target = self.check_refund(payment, amount, now=now)
        previous = payment.status
        payment.refunded_amount = payment.refunded_amount + amount
        payment.status = target
        return Transition(previous, target)
