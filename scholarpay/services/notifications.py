from __future__ import annotations

import logging
from typing import Protocol

from scholarpay.domain.models import PaymentRecord


class PaymentNotifier(Protocol):
    """Side effects fired once per real status change (emails, SMS, ...)."""

    async def payment_completed(self, payment: PaymentRecord) -> None: ...

    async def payment_failed(self, payment: PaymentRecord) -> None: ...

    async def payment_refunded(self, payment: PaymentRecord) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event, delivers nothing."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)

    async def payment_completed(self, payment: PaymentRecord) -> None:
        self.logger.info(
            "payment completed",
            extra={"payment_id": payment.id, "merchant_reference": payment.merchant_reference},
        )

    async def payment_failed(self, payment: PaymentRecord) -> None:
        self.logger.info(
            "payment failed",
            extra={
                "payment_id": payment.id,
                "merchant_reference": payment.merchant_reference,
                "status": payment.status,
            },
        )

    async def payment_refunded(self, payment: PaymentRecord) -> None:
        self.logger.info(
            "payment refunded",
            extra={
                "payment_id": payment.id,
                "merchant_reference": payment.merchant_reference,
                "status": payment.status,
                "amount": payment.refunded_amount,
            },
        )
