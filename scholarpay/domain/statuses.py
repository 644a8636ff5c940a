from __future__ import annotations

from enum import Enum
from typing import Any


class PaymentStatus(str, Enum):
    """Status of a payment."""

    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "Partially Refunded"

    @property
    def is_terminal(self) -> bool:
        return self in {
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
        }

    @property
    def badge_color(self) -> str:
        """UI badge colour used by the frontend status chip."""

        mapping = {
            PaymentStatus.PENDING: "warning",
            PaymentStatus.COMPLETED: "success",
            PaymentStatus.FAILED: "danger",
            PaymentStatus.CANCELLED: "secondary",
            PaymentStatus.REFUNDED: "info",
            PaymentStatus.PARTIALLY_REFUNDED: "info",
        }
        return mapping.get(self, "secondary")


# Pesapal payment_status_code values. Anything else (including 0 = INVALID
# and a missing code) leaves the local status untouched.
_GATEWAY_STATUS_CODES = {
    "1": PaymentStatus.COMPLETED,
    "2": PaymentStatus.FAILED,
    "3": PaymentStatus.CANCELLED,
}


def map_gateway_status(code: Any) -> PaymentStatus:
    """Map a gateway ``payment_status_code`` to a local status."""
    if code is None:
        return PaymentStatus.PENDING
    return _GATEWAY_STATUS_CODES.get(str(code).strip(), PaymentStatus.PENDING)
