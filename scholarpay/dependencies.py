from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from scholarpay.config import Settings, settings
from scholarpay.domain.state_machine import PaymentStateMachine
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.providers.token_cache import TokenCache
from scholarpay.repositories.store import PaymentStore, get_payment_store
from scholarpay.services.notifications import LoggingNotifier, PaymentNotifier
from scholarpay.services.payments_service import PaymentsService
from scholarpay.services.reconciliation_service import ReconciliationService
from scholarpay.services.refund_service import RefundProcessor
from scholarpay.utils.locks import KeyedLocks
from scholarpay.utils.references import MerchantReferenceGenerator


@dataclass
class Container:
    """Wired payment components sharing one store, token cache and lock set."""

    settings: Settings
    store: PaymentStore
    client: PesapalClient
    payments: PaymentsService
    reconciliation: ReconciliationService
    refunds: RefundProcessor


def build_container(
    cfg: Settings,
    *,
    store: PaymentStore | None = None,
    client: PesapalClient | None = None,
    notifier: PaymentNotifier | None = None,
) -> Container:
    store = store or get_payment_store(cfg)
    client = client or PesapalClient(
        cfg, TokenCache(grace_seconds=cfg.token_grace_seconds), event_log=store
    )
    notifier = notifier or LoggingNotifier()
    locks = KeyedLocks()
    state_machine = PaymentStateMachine(refund_window_days=cfg.refund_window_days)
    reconciliation = ReconciliationService(
        client,
        store,
        state_machine,
        notifier=notifier,
        locks=locks,
        retry_attempts=cfg.gateway_retry_attempts,
        retry_delay_seconds=cfg.gateway_retry_delay_seconds,
        conflict_retries=cfg.reconcile_conflict_retries,
    )
    refunds = RefundProcessor(
        client,
        store,
        state_machine,
        notifier=notifier,
        locks=locks,
        conflict_retries=cfg.reconcile_conflict_retries,
    )
    payments = PaymentsService(
        client,
        store,
        reconciliation,
        MerchantReferenceGenerator(cfg.merchant_reference_prefix),
        cfg,
    )
    return Container(
        settings=cfg,
        store=store,
        client=client,
        payments=payments,
        reconciliation=reconciliation,
        refunds=refunds,
    )


@lru_cache()
def get_container() -> Container:
    """Process-wide container used by the FastAPI routes (override in tests)."""
    return build_container(settings)
