from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from scholarpay.domain.statuses import PaymentStatus


def fingerprint(payload: dict[str, Any]) -> str:
    """Stable digest of a raw gateway body, used to spot replays."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SubmitOrderResult:
    order_tracking_id: str
    merchant_reference: str
    redirect_url: str | None = None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransactionStatus:
    """Normalized GetTransactionStatus response."""

    order_tracking_id: str
    status_code: str | None
    status: PaymentStatus
    confirmation_code: str | None = None
    currency: str | None = None
    description: str | None = None
    payment_status_description: str | None = None
    payment_method: str | None = None
    amount: Decimal | None = None
    merchant_reference: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.raw)


@dataclass
class RefundResult:
    refund_id: str | None
    status: str | None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        # Pesapal reports the outcome as a string status: "200" ok, anything else rejected
        return self.status is not None and str(self.status) == "200"


@dataclass
class IpnRegistration:
    notification_id: str
    url: str | None
    status: str | None
    notification_type: str | None = None
    created_date: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
