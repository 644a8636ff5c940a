from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from scholarpay.config import Settings, settings
from scholarpay.domain.dtos import PaymentInitiateRequest
from scholarpay.domain.enums import Channel
from scholarpay.domain.errors import AuthError, GatewayError, ValidationError
from scholarpay.domain.models import BillingAddress, OrderRequest, Payable, PaymentRecord
from scholarpay.domain.statuses import PaymentStatus
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.providers.results import SubmitOrderResult, fingerprint
from scholarpay.repositories.store import PaymentStore
from scholarpay.utils.references import MerchantReferenceGenerator
from scholarpay.utils.retry import gateway_retrying

from .reconciliation_service import ReconciliationService

MONEY_QUANT = Decimal("0.01")
MAX_PAYMENT_AMOUNT = Decimal("1000000")


class PaymentsService:
    """Business logic for payments."""

    def __init__(
        self,
        client: PesapalClient,
        store: PaymentStore,
        reconciliation: ReconciliationService,
        references: MerchantReferenceGenerator | None = None,
        cfg: Settings = settings,
    ):
        self.client = client
        self.store = store
        self.reconciliation = reconciliation
        self.settings = cfg
        self.references = references or MerchantReferenceGenerator(cfg.merchant_reference_prefix)
        self.logger = logging.getLogger(__name__)

    def _validate(self, request: PaymentInitiateRequest) -> tuple[Decimal, str]:
        currency = (request.currency or self.settings.pesapal_default_currency).upper()
        supported = [c.upper() for c in self.settings.pesapal_supported_currencies]
        if currency not in supported:
            raise ValidationError(f"Currency must be one of: {', '.join(supported)}")
        amount = Decimal(request.amount).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if amount > MAX_PAYMENT_AMOUNT:
            raise ValidationError("Payment amount cannot exceed 1,000,000.")
        minimum = request.payment_type.minimum_amount
        if amount < minimum:
            raise ValidationError(f"Minimum amount for {request.payment_type.value} is {minimum}.")
        return amount, currency

    async def initiate_payment(self, request: PaymentInitiateRequest) -> PaymentRecord:
        amount, currency = self._validate(request)
        merchant_reference = self.references.generate()
        order = OrderRequest(
            merchant_reference=merchant_reference,
            amount=amount,
            currency=currency,
            description=request.description,
            callback_url=self.settings.pesapal_callback_url,
            notification_id=self.settings.pesapal_default_notification_id or None,
            billing_address=BillingAddress(
                email_address=str(request.email),
                first_name=request.first_name,
                last_name=request.last_name,
                phone_number=request.phone,
                country_code=request.country_code or self.settings.pesapal_default_country_code,
                line_1=request.address_line_1,
                line_2=request.address_line_2,
                city=request.city,
                state=request.state,
                postal_code=request.postal_code,
            ),
        )
        order.validate()
        self.logger.info(
            "submitting order to gateway",
            extra={
                "merchant_reference": merchant_reference,
                "amount": amount,
                "currency": currency,
            },
        )
        result = await self._submit(order)

        payment = PaymentRecord(
            merchant_reference=merchant_reference,
            amount=amount,
            currency=currency,
            user_id=request.user_id,
            description=request.description,
            payment_type=request.payment_type,
            payable=Payable(request.payable_kind, request.payable_id)
            if request.payable_kind is not None and request.payable_id is not None
            else None,
            recipient_id=request.recipient_id,
            gateway_transaction_id=result.order_tracking_id,
            redirect_url=result.redirect_url,
            status=PaymentStatus.PENDING,
        )
        payment.gateway_response_log.append(
            {
                "kind": "submit_order",
                "received_at": datetime.now(timezone.utc).isoformat(),
                "fingerprint": fingerprint(result.raw),
                "replay": False,
                "status": PaymentStatus.PENDING.value,
                "payload": result.raw,
            }
        )
        stored = self.store.add(payment)
        self.logger.info(
            "payment stored",
            extra={
                "payment_id": stored.id,
                "merchant_reference": merchant_reference,
                "order_tracking_id": result.order_tracking_id,
                "status": stored.status,
            },
        )
        return stored

    async def _submit(self, order: OrderRequest) -> SubmitOrderResult:
        # Retries reuse the same merchant reference so the gateway can deduplicate
        try:
            async for attempt in gateway_retrying(
                self.settings.gateway_retry_attempts, self.settings.gateway_retry_delay_seconds
            ):
                with attempt:
                    result = await self.client.submit_order(order)
        except (GatewayError, AuthError) as exc:
            self.logger.error(
                "order submission failed",
                extra={"merchant_reference": order.merchant_reference, "error": str(exc)},
            )
            raise
        return result

    def get_payment(self, payment_id: int) -> PaymentRecord | None:
        return self.store.get(payment_id)

    async def check_status(self, payment_id: int) -> PaymentRecord | None:
        """Return the payment, refreshing it from the gateway while still Pending."""
        payment = self.store.get(payment_id)
        if payment is None:
            return None
        if payment.status == PaymentStatus.PENDING and payment.gateway_transaction_id:
            payment = await self.reconciliation.reconcile(payment, Channel.STATUS_CHECK)
        return payment

    def history(self, user_id: int, limit: int = 15, offset: int = 0) -> list[PaymentRecord]:
        return self.store.list_by_user(user_id, limit=limit, offset=offset)
