"""Applies authoritative gateway status to local payment records.

The browser callback and the server-to-server IPN both end up in
``reconcile``. Neither trigger is trusted on its own: the live status is always
fetched from the gateway, then applied under a per-payment lock with an
optimistic version check, so the two channels can race freely.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from scholarpay.domain.enums import Channel
from scholarpay.domain.errors import (
    AuthError,
    GatewayError,
    IllegalTransitionError,
    ReconciliationError,
    StaleRecordError,
)
from scholarpay.domain.models import PaymentRecord
from scholarpay.domain.state_machine import PaymentStateMachine, Transition
from scholarpay.domain.statuses import PaymentStatus
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.providers.results import TransactionStatus
from scholarpay.repositories.store import PaymentStore
from scholarpay.utils.locks import KeyedLocks
from scholarpay.utils.retry import gateway_retrying

from .notifications import LoggingNotifier, PaymentNotifier

logger = logging.getLogger(__name__)


@dataclass
class IpnAcknowledgement:
    """Body Pesapal expects back from the IPN URL (always sent with HTTP 200)."""

    order_tracking_id: str | None
    merchant_reference: str | None
    notification_type: str | None
    status: int
    payment_id: int | None = None

    def as_response(self) -> dict[str, Any]:
        return {
            "orderNotificationType": self.notification_type,
            "orderTrackingId": self.order_tracking_id,
            "orderMerchantReference": self.merchant_reference,
            "status": self.status,
        }


class ReconciliationService:
    def __init__(
        self,
        client: PesapalClient,
        store: PaymentStore,
        state_machine: PaymentStateMachine,
        *,
        notifier: PaymentNotifier | None = None,
        locks: KeyedLocks | None = None,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        conflict_retries: int = 3,
    ):
        self.client = client
        self.store = store
        self.state_machine = state_machine
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks or KeyedLocks()
        self.retry_attempts = retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.conflict_retries = max(1, conflict_retries)

    async def handle_callback(self, order_tracking_id: str | None, merchant_reference: str | None) -> PaymentRecord:
        """Browser redirect: find the payment by reference (or tracking id) and reconcile."""
        if not order_tracking_id:
            raise ReconciliationError("Missing order tracking ID")
        payment = None
        if merchant_reference:
            payment = self.store.get_by_merchant_reference(merchant_reference)
        if payment is None:
            payment = self.store.get_by_gateway_transaction_id(order_tracking_id)
        if payment is None:
            logger.warning(
                "callback received for unknown payment",
                extra={"order_tracking_id": order_tracking_id, "merchant_reference": merchant_reference},
            )
            raise ReconciliationError("Payment record not found")
        return await self.reconcile(payment, Channel.CALLBACK, order_tracking_id=order_tracking_id)

    async def handle_ipn(
        self,
        order_tracking_id: str | None,
        notification_type: str | None = None,
        merchant_reference: str | None = None,
    ) -> IpnAcknowledgement:
        """Server-to-server notification. Never raises for business outcomes."""
        ack = IpnAcknowledgement(
            order_tracking_id=order_tracking_id,
            merchant_reference=merchant_reference,
            notification_type=notification_type,
            status=200,
        )
        if not order_tracking_id:
            logger.warning("IPN received without order tracking id", extra={"notification_type": notification_type})
            ack.status = 500
            return ack
        payment = self.store.get_by_gateway_transaction_id(order_tracking_id)
        if payment is None:
            # The callback or initiation may not have persisted yet; acknowledge anyway
            logger.warning(
                "IPN received for unknown payment",
                extra={"order_tracking_id": order_tracking_id, "notification_type": notification_type},
            )
            return ack
        try:
            updated = await self.reconcile(payment, Channel.IPN, order_tracking_id=order_tracking_id)
        except (GatewayError, AuthError, ReconciliationError, StaleRecordError) as exc:
            logger.error(
                "IPN processing failed",
                extra={
                    "order_tracking_id": order_tracking_id,
                    "merchant_reference": payment.merchant_reference,
                    "payment_id": payment.id,
                    "error": str(exc),
                },
            )
            ack.status = 500
            ack.payment_id = payment.id
            return ack
        ack.payment_id = updated.id
        ack.merchant_reference = updated.merchant_reference
        logger.info(
            "payment IPN processed",
            extra={
                "payment_id": updated.id,
                "order_tracking_id": order_tracking_id,
                "notification_type": notification_type,
                "status": updated.status,
            },
        )
        return ack

    async def reconcile(
        self,
        payment: PaymentRecord,
        channel: Channel,
        *,
        order_tracking_id: str | None = None,
    ) -> PaymentRecord:
        """Fetch live status and apply it to ``payment``; safe to repeat."""
        tracking_id = payment.gateway_transaction_id or order_tracking_id
        if not tracking_id:
            raise ReconciliationError("Payment has no gateway order to reconcile")
        if order_tracking_id and payment.gateway_transaction_id and order_tracking_id != payment.gateway_transaction_id:
            logger.warning(
                "order tracking id does not match payment",
                extra={
                    "payment_id": payment.id,
                    "merchant_reference": payment.merchant_reference,
                    "order_tracking_id": order_tracking_id,
                },
            )
            raise ReconciliationError("Order tracking ID does not match payment record")

        status = await self._fetch_status(payment, tracking_id)
        if status.merchant_reference and status.merchant_reference != payment.merchant_reference:
            raise ReconciliationError(
                f"Gateway reports merchant reference {status.merchant_reference} for {payment.merchant_reference}"
            )

        async with self.locks.hold(payment.id):
            updated, transition = self._persist(payment.id, tracking_id, status, channel)  # type: ignore[arg-type]

        logger.info(
            "payment reconciled",
            extra={
                "payment_id": updated.id,
                "merchant_reference": updated.merchant_reference,
                "order_tracking_id": tracking_id,
                "channel": channel,
                "previous_status": transition.previous,
                "status": updated.status,
            },
        )
        if transition.changed:
            await self._notify(updated)
        return updated

    async def _fetch_status(self, payment: PaymentRecord, tracking_id: str) -> TransactionStatus:
        try:
            async for attempt in gateway_retrying(self.retry_attempts, self.retry_delay_seconds):
                with attempt:
                    status = await self.client.get_transaction_status(tracking_id)
        except (GatewayError, AuthError) as exc:
            logger.error(
                "failed to get transaction status",
                extra={
                    "payment_id": payment.id,
                    "merchant_reference": payment.merchant_reference,
                    "order_tracking_id": tracking_id,
                    "error": str(exc),
                },
            )
            raise
        return status

    def _persist(
        self,
        payment_id: int,
        tracking_id: str,
        status: TransactionStatus,
        channel: Channel,
    ) -> tuple[PaymentRecord, Transition]:
        last_error: StaleRecordError | None = None
        for attempt in range(1, self.conflict_retries + 1):
            current = self.store.get(payment_id)
            if current is None:
                raise ReconciliationError(f"Payment {payment_id} disappeared during reconciliation")
            transition = self._apply(current, tracking_id, status, channel)
            try:
                return self.store.update(current), transition
            except StaleRecordError as exc:
                last_error = exc
                logger.info(
                    "concurrent update detected; re-reading payment",
                    extra={"payment_id": payment_id, "attempt": attempt},
                )
        assert last_error is not None
        raise last_error

    def _apply(
        self,
        payment: PaymentRecord,
        tracking_id: str,
        status: TransactionStatus,
        channel: Channel,
    ) -> Transition:
        """Mutate ``payment`` (a fresh copy) with the gateway outcome and log it."""
        now = datetime.now(timezone.utc)
        fingerprint = status.fingerprint
        replay = fingerprint in payment.logged_fingerprints()
        entry: dict[str, Any] = {
            "kind": "status",
            "channel": channel.value,
            "received_at": now.isoformat(),
            "fingerprint": fingerprint,
            "replay": replay,
            "status_code": status.status_code,
            "previous_status": payment.status.value,
        }
        try:
            transition = self.state_machine.apply_gateway_status(payment, status.status, now=now)
        except IllegalTransitionError as exc:
            logger.warning(
                "illegal status transition rejected",
                extra={
                    "payment_id": payment.id,
                    "merchant_reference": payment.merchant_reference,
                    "previous_status": payment.status,
                    "status": status.status,
                    "channel": channel,
                },
            )
            transition = Transition(payment.status, payment.status)
            entry["rejected"] = str(exc)
        else:
            if payment.gateway_transaction_id is None:
                payment.gateway_transaction_id = tracking_id
            if status.confirmation_code and not payment.confirmation_code:
                payment.confirmation_code = status.confirmation_code
            if status.payment_method and not payment.payment_method:
                payment.payment_method = status.payment_method
            if (
                transition.changed
                and payment.status == PaymentStatus.COMPLETED
                and status.amount is not None
                and status.amount != payment.amount
            ):
                logger.warning(
                    "gateway amount differs from payment amount",
                    extra={"payment_id": payment.id, "amount": status.amount},
                )
        entry["applied"] = transition.changed
        entry["status"] = payment.status.value
        if not replay:
            entry["payload"] = status.raw
        payment.gateway_response_log.append(entry)
        return transition

    async def _notify(self, payment: PaymentRecord) -> None:
        try:
            if payment.status == PaymentStatus.COMPLETED:
                await self.notifier.payment_completed(payment)
            elif payment.status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
                await self.notifier.payment_failed(payment)
        except Exception:  # noqa: BLE001
            # The record is already committed; a failed email must not undo it
            logger.exception("payment notification failed", extra={"payment_id": payment.id})
