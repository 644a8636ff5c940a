from __future__ import annotations

from typing import Any, Optional, Protocol

from scholarpay.config import Settings
from scholarpay.domain.models import PaymentRecord
from scholarpay.domain.statuses import PaymentStatus


class PaymentStore(Protocol):
    """Interface the services rely on; both stores implement it."""

    def add(self, payment: PaymentRecord) -> PaymentRecord: ...

    def update(self, payment: PaymentRecord) -> PaymentRecord: ...

    def get(self, payment_id: int) -> Optional[PaymentRecord]: ...

    def get_by_merchant_reference(self, reference: str) -> Optional[PaymentRecord]: ...

    def get_by_gateway_transaction_id(self, tracking_id: str) -> Optional[PaymentRecord]: ...

    def list_by_user(self, user_id: int, limit: int = 15, offset: int = 0) -> list[PaymentRecord]: ...

    def list_by_status(self, status: PaymentStatus) -> list[PaymentRecord]: ...

    def count_by_status(self) -> dict[str, int]: ...

    def log_provider_event(self, **fields: Any) -> None: ...


def get_payment_store(cfg: Settings) -> PaymentStore:
    """Postgres when the database is configured, in-memory otherwise."""
    if cfg.db_enabled:
        from .pg_store import PgPaymentStore

        return PgPaymentStore()
    from .memory_store import InMemoryPaymentStore

    return InMemoryPaymentStore()
