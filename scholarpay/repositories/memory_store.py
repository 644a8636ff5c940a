from __future__ import annotations

import copy
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from scholarpay.domain.errors import StaleRecordError
from scholarpay.domain.models import PaymentRecord
from scholarpay.domain.statuses import PaymentStatus


class InMemoryPaymentStore:
    """In-memory payment repository.

    Records are copied in and out so callers never share state with the store;
    ``update`` enforces the same optimistic version check as the Postgres store.
    """

    def __init__(self) -> None:
        self.by_id: Dict[int, PaymentRecord] = {}
        self.by_reference: Dict[str, int] = {}
        self.by_tracking_id: Dict[str, int] = {}
        self.provider_events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def add(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if payment.merchant_reference in self.by_reference:
                raise ValueError(f"Duplicate merchant reference {payment.merchant_reference}")
            stored = copy.deepcopy(payment)
            stored.id = max(self.by_id.keys(), default=0) + 1
            now = datetime.now(timezone.utc)
            stored.created_at = stored.created_at or now
            stored.updated_at = now
            stored.version = 1
            self.by_id[stored.id] = stored
            self.by_reference[stored.merchant_reference] = stored.id
            if stored.gateway_transaction_id:
                self.by_tracking_id[stored.gateway_transaction_id] = stored.id
            return copy.deepcopy(stored)

    def update(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            current = self.by_id.get(payment.id or 0)
            if current is None:
                raise KeyError(f"Unknown payment {payment.id}")
            if current.version != payment.version:
                raise StaleRecordError(
                    f"Payment {payment.id} changed (version {current.version}, expected {payment.version})"
                )
            stored = copy.deepcopy(payment)
            stored.version = current.version + 1
            stored.updated_at = datetime.now(timezone.utc)
            self.by_id[stored.id] = stored  # type: ignore[index]
            if stored.gateway_transaction_id:
                self.by_tracking_id[stored.gateway_transaction_id] = stored.id  # type: ignore[assignment]
            return copy.deepcopy(stored)

    def get(self, payment_id: int) -> Optional[PaymentRecord]:
        payment = self.by_id.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    def get_by_merchant_reference(self, reference: str) -> Optional[PaymentRecord]:
        payment_id = self.by_reference.get(reference)
        if payment_id:
            return self.get(payment_id)
        return None

    def get_by_gateway_transaction_id(self, tracking_id: str) -> Optional[PaymentRecord]:
        payment_id = self.by_tracking_id.get(tracking_id)
        if payment_id:
            return self.get(payment_id)
        return None

    def list_by_user(self, user_id: int, limit: int = 15, offset: int = 0) -> list[PaymentRecord]:
        owned = [p for p in self.by_id.values() if p.user_id == user_id]
        owned.sort(key=lambda p: (p.created_at, p.id or 0), reverse=True)
        return [copy.deepcopy(p) for p in owned[offset : offset + limit]]

    def list_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        return [copy.deepcopy(p) for p in self.by_id.values() if p.status == status]

    def count_by_status(self) -> dict[str, int]:
        return dict(Counter(p.status.value for p in self.by_id.values()))

    def log_provider_event(self, **fields: Any) -> None:
        self.provider_events.append(dict(fields, created_at=datetime.now(timezone.utc)))
