from __future__ import annotations

import json
import pathlib
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from scholarpay.config import Settings
from scholarpay.dependencies import Container, build_container
from scholarpay.domain.models import PaymentRecord
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.providers.token_cache import TokenCache
from scholarpay.repositories.memory_store import InMemoryPaymentStore


class FakePesapal:
    """Scripted Pesapal v3 API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.statuses: dict[str, dict[str, Any]] = {}
        self.references: dict[str, str] = {}
        # path suffix -> responses returned (in order) before the default handler
        self.queued: dict[str, list[httpx.Response | Exception]] = {}
        self.refund_body: dict[str, Any] = {"status": "200", "message": "Refund request successfully", "refund_id": "RF-1"}
        self.token_expiry = (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat()
        self._tokens = 0
        self._orders = 0

    @property
    def token_requests(self) -> int:
        return self.count("/Auth/RequestToken")

    def count(self, suffix: str) -> int:
        return sum(1 for _, path in self.calls if path.endswith(suffix))

    def queue(self, suffix: str, *responses: httpx.Response | Exception) -> None:
        self.queued.setdefault(suffix, []).extend(responses)

    def set_status(
        self,
        tracking_id: str,
        code: str,
        *,
        confirmation_code: str | None = "QWE123RTY",
        amount: Any = 100.0,
        merchant_reference: str | None = None,
        payment_method: str = "MpesaKE",
    ) -> None:
        descriptions = {"0": "INVALID", "1": "Completed", "2": "Failed", "3": "Reversed"}
        self.statuses[tracking_id] = {
            "payment_method": payment_method,
            "amount": amount,
            "created_date": "2024-05-01T10:15:00.000",
            "confirmation_code": confirmation_code if code == "1" else "",
            "payment_status_description": descriptions.get(code, "Pending"),
            "description": "",
            "message": "Request processed successfully",
            "payment_account": "2547XXXXX123",
            "payment_status_code": code,
            "merchant_reference": merchant_reference or self.references.get(tracking_id),
            "currency": "KES",
            "error": {"error_type": None, "code": None, "message": None, "call_back_url": None},
            "status": "200",
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        self.requests.append(request)
        for suffix, pending in self.queued.items():
            if path.endswith(suffix) and pending:
                item = pending.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
        if path.endswith("/Auth/RequestToken"):
            self._tokens += 1
            return httpx.Response(
                200,
                json={"token": f"token-{self._tokens}", "expiryDate": self.token_expiry, "error": None, "status": "200"},
            )
        if path.endswith("/Transactions/SubmitOrderRequest"):
            self._orders += 1
            body = _json(request)
            tracking_id = f"trk-{self._orders:04d}"
            self.references[tracking_id] = body["id"]
            return httpx.Response(
                200,
                json={
                    "order_tracking_id": tracking_id,
                    "merchant_reference": body["id"],
                    "redirect_url": f"https://cybqa.pesapal.com/pesapaliframe/PesapalIframe3/Index?OrderTrackingId={tracking_id}",
                    "error": None,
                    "status": "200",
                },
            )
        if path.endswith("/Transactions/GetTransactionStatus"):
            tracking_id = request.url.params["orderTrackingId"]
            if tracking_id not in self.statuses:
                self.set_status(tracking_id, "0")
            return httpx.Response(200, json=self.statuses[tracking_id])
        if path.endswith("/Transactions/RefundRequest"):
            return httpx.Response(200, json=self.refund_body)
        if path.endswith("/URLSetup/RegisterIPN"):
            body = _json(request)
            return httpx.Response(
                200,
                json={
                    "url": body["url"],
                    "created_date": "2024-05-01T10:00:00.000",
                    "ipn_id": "ipn-0001",
                    "notification_type": 0,
                    "ipn_notification_type_description": body["ipn_notification_type"],
                    "ipn_status": 1,
                    "ipn_status_description": "Active",
                    "error": None,
                    "status": "200",
                },
            )
        return httpx.Response(404, json={"error": {"message": "not found"}})


def _json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content or b"{}")


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, int | None]] = []

    async def payment_completed(self, payment: PaymentRecord) -> None:
        self.events.append(("completed", payment.id))

    async def payment_failed(self, payment: PaymentRecord) -> None:
        self.events.append(("failed", payment.id))

    async def payment_refunded(self, payment: PaymentRecord) -> None:
        self.events.append(("refunded", payment.id))


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        pesapal_consumer_key="ck_test",
        pesapal_consumer_secret="cs_test",
        pesapal_default_notification_id="ipn-0001",
        gateway_retry_delay_seconds=0,
        db_host="",
    )


@pytest.fixture
def gateway() -> FakePesapal:
    return FakePesapal()


@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def client(cfg: Settings, gateway: FakePesapal, store: InMemoryPaymentStore) -> PesapalClient:
    return PesapalClient(cfg, TokenCache(), event_log=store, transport=gateway.transport())


@pytest.fixture
def container(
    cfg: Settings,
    store: InMemoryPaymentStore,
    client: PesapalClient,
    notifier: RecordingNotifier,
) -> Container:
    return build_container(cfg, store=store, client=client, notifier=notifier)


def make_payment(
    store: InMemoryPaymentStore,
    *,
    tracking_id: str | None = "trk-0001",
    amount: str = "100.00",
    reference: str = "MALAIKA_1714557300_abcdEFGH",
    user_id: int = 7,
) -> PaymentRecord:
    return store.add(
        PaymentRecord(
            merchant_reference=reference,
            amount=Decimal(amount),
            currency="KES",
            user_id=user_id,
            description="Scholarship support for term 2",
            gateway_transaction_id=tracking_id,
        )
    )
