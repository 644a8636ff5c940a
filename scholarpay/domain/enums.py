from __future__ import annotations

from decimal import Decimal
from enum import Enum


class PaymentType(str, Enum):
    """What the payer is paying for, as offered to users."""

    SCHOLARSHIP_SUPPORT = "Scholarship Support"
    MATERIAL_DONATION = "Material Donation"
    GENERAL_DONATION = "General Donation"
    APPLICATION_FEE = "Application Fee"
    PROMOTION_FEE = "Promotion Fee"

    @property
    def minimum_amount(self) -> Decimal:
        mapping = {
            PaymentType.SCHOLARSHIP_SUPPORT: Decimal("100"),
            PaymentType.MATERIAL_DONATION: Decimal("50"),
            PaymentType.GENERAL_DONATION: Decimal("10"),
            PaymentType.APPLICATION_FEE: Decimal("500"),
            PaymentType.PROMOTION_FEE: Decimal("1000"),
        }
        return mapping.get(self, Decimal("1"))


class PayableKind(str, Enum):
    """Kinds of entity a payment can be attached to."""

    APPLICATION = "application"
    SPONSORSHIP = "sponsorship"
    PROMOTIONAL_PURCHASE = "promotional_purchase"
    OPPORTUNITY = "opportunity"
    STUDENT = "student"
    SCHOLASTIC_MATERIAL = "scholastic_material"


class Channel(str, Enum):
    """Notification channel that triggered a reconciliation."""

    CALLBACK = "callback"
    IPN = "ipn"
    STATUS_CHECK = "status_check"


class IpnNotificationType(str, Enum):
    """HTTP method Pesapal uses to call the registered IPN URL."""

    GET = "GET"
    POST = "POST"
