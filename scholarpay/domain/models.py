from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from email_validator import EmailNotValidError, validate_email

from .enums import PayableKind, PaymentType
from .errors import ValidationError
from .statuses import PaymentStatus


@dataclass(frozen=True)
class Payable:
    """The entity a payment is for, as a ``{kind, id}`` variant."""

    kind: PayableKind
    id: int


@dataclass
class PaymentRecord:
    """Local record of one payment attempt against the gateway."""

    merchant_reference: str
    amount: Decimal
    currency: str
    user_id: int
    description: str
    id: int | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_transaction_id: str | None = None
    confirmation_code: str | None = None
    payment_method: str | None = None
    payment_type: PaymentType | None = None
    payable: Payable | None = None
    recipient_id: int | None = None
    redirect_url: str | None = None
    refunded_amount: Decimal = Decimal("0")
    gateway_response_log: list[dict[str, Any]] = field(default_factory=list)
    processed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount

    def logged_fingerprints(self) -> set[str]:
        return {
            str(entry["fingerprint"])
            for entry in self.gateway_response_log
            if entry.get("fingerprint") and not entry.get("replay")
        }


@dataclass
class BillingAddress:
    email_address: str
    first_name: str
    last_name: str
    phone_number: str | None = None
    country_code: str = "KE"
    line_1: str | None = None
    line_2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "email_address": self.email_address,
            "phone_number": self.phone_number,
            "country_code": self.country_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "line_1": self.line_1,
            "line_2": self.line_2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
        }


@dataclass
class OrderRequest:
    """Order about to be submitted to the gateway."""

    merchant_reference: str
    amount: Decimal
    currency: str
    description: str
    callback_url: str
    billing_address: BillingAddress
    notification_id: str | None = None

    def validate(self) -> None:
        """Raise ValidationError unless the order is safe to send."""
        required = {
            "merchant_reference": self.merchant_reference,
            "description": self.description,
            "callback_url": self.callback_url,
            "customer_email": self.billing_address.email_address,
            "customer_first_name": self.billing_address.first_name,
            "customer_last_name": self.billing_address.last_name,
        }
        for name, value in required.items():
            if value is None or not str(value).strip():
                raise ValidationError(f"Required field '{name}' is missing")
        try:
            amount = Decimal(str(self.amount))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError("Amount must be a positive number") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive number")
        try:
            validate_email(self.billing_address.email_address, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError("Invalid customer email address") from exc
