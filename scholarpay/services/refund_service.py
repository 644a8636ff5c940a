from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from scholarpay.domain.errors import AuthError, GatewayError, RefundError, StaleRecordError
from scholarpay.domain.models import PaymentRecord
from scholarpay.domain.state_machine import PaymentStateMachine
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.providers.results import RefundResult
from scholarpay.repositories.store import PaymentStore
from scholarpay.utils.locks import KeyedLocks

from .notifications import LoggingNotifier, PaymentNotifier

MONEY_QUANT = Decimal("0.01")


class RefundProcessor:
    """Drives a compensating gateway refund for a completed payment.

    All preconditions are checked before the gateway is contacted. The refund
    holds the payment's lock for its whole duration, so it cannot interleave
    with a reconciliation or a second refund of the same payment.
    """

    def __init__(
        self,
        client: PesapalClient,
        store: PaymentStore,
        state_machine: PaymentStateMachine,
        *,
        notifier: PaymentNotifier | None = None,
        locks: KeyedLocks | None = None,
        conflict_retries: int = 3,
    ):
        self.client = client
        self.store = store
        self.state_machine = state_machine
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks or KeyedLocks()
        self.conflict_retries = max(1, conflict_retries)
        self.logger = logging.getLogger(__name__)

    async def refund(self, payment: PaymentRecord, amount: Any, reason: str, requested_by: str) -> PaymentRecord:
        refund_amount = self._normalize_amount(amount)
        if not reason or not reason.strip():
            raise RefundError("A refund reason is required")
        if payment.id is None:
            raise RefundError("Payment has not been persisted")

        async with self.locks.hold(payment.id):
            current = self.store.get(payment.id)
            if current is None:
                raise RefundError(f"Unknown payment {payment.id}")
            self.state_machine.check_refund(current, refund_amount)

            try:
                result = await self.client.process_refund(
                    current.confirmation_code, refund_amount, requested_by  # type: ignore[arg-type]
                )
            except (GatewayError, AuthError) as exc:
                self.logger.error(
                    "payment refund failed",
                    extra={
                        "payment_id": current.id,
                        "merchant_reference": current.merchant_reference,
                        "order_tracking_id": current.gateway_transaction_id,
                        "amount": refund_amount,
                        "error": str(exc),
                    },
                )
                raise RefundError(f"Refund processing failed: {exc}") from exc

            if not result.accepted:
                self.logger.error(
                    "payment refund rejected by gateway",
                    extra={
                        "payment_id": current.id,
                        "merchant_reference": current.merchant_reference,
                        "response_code": result.status,
                        "error": result.message,
                    },
                )
                raise RefundError(f"Refund rejected by gateway: {result.message or result.status}")

            updated = self._record(current, refund_amount, result, reason, requested_by)

        self.logger.info(
            "payment refund processed",
            extra={
                "payment_id": updated.id,
                "merchant_reference": updated.merchant_reference,
                "amount": refund_amount,
                "refund_id": result.refund_id,
                "status": updated.status,
            },
        )
        try:
            await self.notifier.payment_refunded(updated)
        except Exception:  # noqa: BLE001
            self.logger.exception("refund notification failed", extra={"payment_id": updated.id})
        return updated

    def _record(
        self,
        payment: PaymentRecord,
        amount: Decimal,
        result: RefundResult,
        reason: str,
        requested_by: str,
    ) -> PaymentRecord:
        current = payment
        for attempt in range(1, self.conflict_retries + 1):
            try:
                self.state_machine.apply_refund(current, amount)
            except RefundError:
                # Money has left at the gateway; this needs a human
                self.logger.critical(
                    "refund accepted by gateway but could not be recorded",
                    extra={
                        "payment_id": current.id,
                        "merchant_reference": current.merchant_reference,
                        "refund_id": result.refund_id,
                        "amount": amount,
                    },
                )
                raise
            current.gateway_response_log.append(
                {
                    "kind": "refund",
                    "received_at": datetime.now(timezone.utc).isoformat(),
                    "refund_id": result.refund_id,
                    "amount": format(amount, "f"),
                    "reason": reason,
                    "requested_by": requested_by,
                    "status": current.status.value,
                    "payload": result.raw,
                }
            )
            try:
                return self.store.update(current)
            except StaleRecordError:
                self.logger.info(
                    "concurrent update detected; re-reading payment",
                    extra={"payment_id": payment.id, "attempt": attempt},
                )
                fresh = self.store.get(payment.id)  # type: ignore[arg-type]
                if fresh is None:
                    break
                current = fresh
        self.logger.critical(
            "refund accepted by gateway but could not be recorded",
            extra={"payment_id": payment.id, "refund_id": result.refund_id, "amount": amount},
        )
        raise RefundError(f"Refund for payment {payment.id} could not be recorded")

    @staticmethod
    def _normalize_amount(value: Any) -> Decimal:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise RefundError("Refund amount must be a number") from exc
        if not amount.is_finite():
            raise RefundError("Refund amount must be a number")
        return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
