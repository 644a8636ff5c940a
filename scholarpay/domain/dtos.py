from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field, model_validator

from .enums import IpnNotificationType, PayableKind, PaymentType
from .statuses import PaymentStatus


class PaymentInitiateRequest(BaseModel):
    """Request body for initiating a payment."""

    user_id: int = Field(..., ge=1, description="Payer (authenticated user) identifier")
    amount: Decimal = Field(..., gt=0, le=Decimal("1000000"))
    currency: str | None = Field(
        default=None, min_length=3, max_length=3, description="ISO currency; defaults to config"
    )
    description: str = Field(..., min_length=5, max_length=255)
    payment_type: PaymentType
    payable_kind: PayableKind | None = Field(default=None, description="What the payment is for")
    payable_id: int | None = Field(default=None, ge=1)
    recipient_id: int | None = Field(default=None, ge=1, description="Beneficiary when not the payer")

    # Billing details forwarded to Pesapal
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: str | None = Field(default=None, max_length=20)
    country_code: str | None = Field(default=None, min_length=2, max_length=2)
    address_line_1: str | None = Field(default=None, max_length=100)
    address_line_2: str | None = Field(default=None, max_length=100)
    city: str | None = Field(default=None, max_length=50)
    state: str | None = Field(default=None, max_length=50)
    postal_code: str | None = Field(default=None, max_length=20)

    @model_validator(mode="after")
    def _check_payable_pair(self) -> "PaymentInitiateRequest":
        if (self.payable_kind is None) != (self.payable_id is None):
            raise ValueError("payable_kind and payable_id must be provided together")
        return self


class PaymentInitiateResponse(BaseModel):
    """Response returned when a payment is initiated."""

    success: bool = True
    payment_id: int
    order_tracking_id: str
    redirect_url: str | None = None
    merchant_reference: str
    status: PaymentStatus
    message: str = "Payment initiated successfully. Please complete payment on Pesapal."


class PaymentSummary(BaseModel):
    id: int
    merchant_reference: str
    gateway_transaction_id: str | None = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    status_badge: str
    description: str
    payment_type: PaymentType | None = None
    payable_kind: PayableKind | None = None
    payable_id: int | None = None
    user_id: int
    recipient_id: int | None = None
    confirmation_code: str | None = None
    payment_method: str | None = None
    refunded_amount: Decimal = Decimal("0")
    processed_at: datetime | None = None
    created_at: datetime | None = None


class PaymentHistory(BaseModel):
    payments: list[PaymentSummary]
    limit: int
    offset: int


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    requested_by: str = Field(..., min_length=1, description="Username of the approving administrator")


class RefundResponse(BaseModel):
    success: bool = True
    message: str = "Refund processed successfully"
    refund_id: str | None = None
    payment: PaymentSummary


class IpnRegisterRequest(BaseModel):
    url: str | None = Field(default=None, description="Defaults to the configured IPN URL")
    notification_type: IpnNotificationType = IpnNotificationType.GET


class IpnRegisterResponse(BaseModel):
    notification_id: str
    url: str | None = None
    status: str | None = None
    notification_type: str | None = None
