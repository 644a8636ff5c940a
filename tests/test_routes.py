from __future__ import annotations

import pathlib
import sys
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from conftest import make_payment
from scholarpay.config import Settings, settings
from scholarpay.dependencies import get_container
from scholarpay.main import app
from scholarpay.services.reconciliation_service import ReconciliationService

AUTH = {"Authorization": f"Bearer {settings.api_bearer_token}"}

INITIATE_PAYLOAD = {
    "user_id": 7,
    "amount": 100,
    "currency": "KES",
    "description": "Scholarship support for term 2",
    "payment_type": "Scholarship Support",
    "payable_kind": "sponsorship",
    "payable_id": 12,
    "email": "amina@example.com",
    "first_name": "Amina",
    "last_name": "Otieno",
}


@pytest.fixture
def api(container):
    app.dependency_overrides[get_container] = lambda: container
    yield TestClient(app)
    app.dependency_overrides.clear()


def _query(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def test_initiate_requires_bearer(api) -> None:
    response = api.post("/api/payments/initiate", json=INITIATE_PAYLOAD)
    assert response.status_code == 401


def test_payment_flow(api, gateway) -> None:
    response = api.post("/api/payments/initiate", json=INITIATE_PAYLOAD, headers=AUTH)
    assert response.status_code == 201
    body = response.json()
    assert body["order_tracking_id"] == "trk-0001"
    assert body["status"] == "Pending"
    payment_id = body["payment_id"]

    gateway.set_status("trk-0001", "1")
    callback = api.get(
        "/api/payments/pesapal/callback",
        params={"OrderTrackingId": "trk-0001", "OrderMerchantReference": body["merchant_reference"]},
        follow_redirects=False,
    )
    assert callback.status_code == 302
    location = callback.headers["location"]
    assert location.startswith(f"{settings.frontend_url}/payment/result")
    assert _query(location) == {"status": "Completed", "payment_id": str(payment_id)}

    status_resp = api.get(f"/api/payments/{payment_id}/status", headers=AUTH)
    assert status_resp.status_code == 200
    summary = status_resp.json()
    assert summary["status"] == "Completed"
    assert summary["status_badge"] == "success"
    assert summary["confirmation_code"] == "QWE123RTY"

    refund = api.post(
        f"/api/payments/{payment_id}/refund",
        json={"amount": 100, "reason": "Scholarship withdrawn", "requested_by": "admin"},
        headers=AUTH,
    )
    assert refund.status_code == 200
    assert refund.json()["refund_id"] == "RF-1"
    assert refund.json()["payment"]["status"] == "Refunded"


def test_initiate_rejects_unsupported_currency(api, gateway) -> None:
    response = api.post("/api/payments/initiate", json={**INITIATE_PAYLOAD, "currency": "JPY"}, headers=AUTH)
    assert response.status_code == 422
    assert gateway.calls == []


def test_initiate_rejects_bad_email(api, gateway) -> None:
    response = api.post("/api/payments/initiate", json={**INITIATE_PAYLOAD, "email": "nope"}, headers=AUTH)
    assert response.status_code == 422
    assert gateway.calls == []


def test_callback_for_unknown_payment_redirects_with_error(api) -> None:
    response = api.get(
        "/api/payments/pesapal/callback",
        params={"OrderTrackingId": "trk-0404", "OrderMerchantReference": "MALAIKA_0_missing0"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    query = _query(response.headers["location"])
    assert query["status"] == "failed"
    assert query["error"] == "Payment record not found"


def test_ipn_get_completes_payment(api, store, gateway) -> None:
    payment = make_payment(store)
    gateway.set_status("trk-0001", "1")

    response = api.get(
        "/api/payments/pesapal/ipn",
        params={
            "OrderTrackingId": "trk-0001",
            "OrderNotificationType": "IPNCHANGE",
            "OrderMerchantReference": payment.merchant_reference,
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "orderNotificationType": "IPNCHANGE",
        "orderTrackingId": "trk-0001",
        "orderMerchantReference": payment.merchant_reference,
        "status": 200,
    }
    assert store.get(payment.id).status.value == "Completed"


def test_ipn_post_json_body(api, store, gateway) -> None:
    payment = make_payment(store)
    gateway.set_status("trk-0001", "2")

    response = api.post(
        "/api/payments/pesapal/ipn",
        json={"OrderTrackingId": "trk-0001", "OrderNotificationType": "IPNCHANGE"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == 200
    assert store.get(payment.id).status.value == "Failed"


def test_ipn_unknown_and_missing_ids(api, gateway) -> None:
    unknown = api.get("/api/payments/pesapal/ipn", params={"OrderTrackingId": "trk-unknown"})
    assert unknown.status_code == 200
    assert unknown.json()["status"] == 200

    missing = api.get("/api/payments/pesapal/ipn")
    assert missing.status_code == 200
    assert missing.json()["status"] == 500
    assert gateway.calls == []


def test_ipn_crash_still_answers_200(api, monkeypatch: pytest.MonkeyPatch) -> None:
    async def explode(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("database gone")

    monkeypatch.setattr(ReconciliationService, "handle_ipn", explode)
    response = api.get("/api/payments/pesapal/ipn", params={"OrderTrackingId": "trk-0001"})
    assert response.status_code == 200
    assert response.json()["status"] == 500


def test_callback_crash_redirects_to_result_page(api, monkeypatch: pytest.MonkeyPatch) -> None:
    async def explode(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("database gone")

    monkeypatch.setattr(ReconciliationService, "handle_callback", explode)
    response = api.get(
        "/api/payments/pesapal/callback",
        params={"OrderTrackingId": "trk-0001", "OrderMerchantReference": "MALAIKA_1_x"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    query = _query(response.headers["location"])
    assert query["status"] == "failed"
    assert query["error"] == "Payment processing error"
    assert "database gone" not in response.headers["location"]


def test_status_unknown_payment(api) -> None:
    response = api.get("/api/payments/999/status", headers=AUTH)
    assert response.status_code == 404


def test_refund_of_pending_payment_is_bad_request(api, store, gateway) -> None:
    payment = make_payment(store)
    response = api.post(
        f"/api/payments/{payment.id}/refund",
        json={"amount": 10, "reason": "Customer request", "requested_by": "admin"},
        headers=AUTH,
    )
    assert response.status_code == 400
    assert "Only completed" in response.json()["detail"]
    assert gateway.count("/Transactions/RefundRequest") == 0


def test_history(api, store) -> None:
    make_payment(store, reference="MALAIKA_1714557300_aaaaaaaa", tracking_id="trk-a")
    make_payment(store, reference="MALAIKA_1714557301_bbbbbbbb", tracking_id="trk-b")
    make_payment(store, reference="MALAIKA_1714557302_cccccccc", tracking_id="trk-c", user_id=99)

    response = api.get("/api/payments/history", params={"user_id": 7}, headers=AUTH)
    assert response.status_code == 200
    ids = [p["id"] for p in response.json()["payments"]]
    assert ids == [2, 1]


def test_register_ipn(api, gateway) -> None:
    response = api.post(
        "/api/payments/pesapal/ipn/register",
        json={"url": "https://example.org/api/payments/pesapal/ipn", "notification_type": "GET"},
        headers=AUTH,
    )
    assert response.status_code == 200
    assert response.json()["notification_id"] == "ipn-0001"


def test_health_metrics_endpoint(api, store) -> None:
    make_payment(store)
    assert api.get("/health").json() == {"status": "ok"}

    response = api.get("/health/metrics")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database"]["enabled"] is False
    assert body["gateway"]["token_cached"] is False
    assert body["payments"]["pending"] == 1
    assert body["payments"]["status_counts"]["Completed"] == 0


def test_health_metrics_reports_oldest_pending_payment(api, store) -> None:
    assert api.get("/health/metrics").json()["payments"]["oldest_pending_age_seconds"] is None

    payment = make_payment(store)
    store.by_id[payment.id].created_at = datetime.now(timezone.utc) - timedelta(minutes=10)
    make_payment(store, tracking_id="trk-0002", reference="MALAIKA_1714557301_ijklMNOP")

    payments = api.get("/health/metrics").json()["payments"]
    assert payments["pending"] == 2
    assert 600 <= payments["oldest_pending_age_seconds"] < 660


def test_docs_require_basic_auth(api) -> None:
    assert api.get("/docs").status_code == 401
    ok = api.get("/openapi.json", auth=(settings.api_basic_username, settings.api_basic_password))
    assert ok.status_code == 200


def test_startup_creates_schema_when_database_configured(container, monkeypatch: pytest.MonkeyPatch) -> None:
    import scholarpay.db.client as db_client
    import scholarpay.main as main

    calls = []
    monkeypatch.setattr(main, "settings", Settings(db_host="localhost", db_user="scholarpay", db_name="scholarpay"))
    monkeypatch.setattr(db_client, "init_schema", lambda: calls.append("init"))
    app.dependency_overrides[get_container] = lambda: container
    try:
        with TestClient(app) as client:
            assert calls == ["init"]
            assert client.get("/health").status_code == 200
    finally:
        app.dependency_overrides.clear()


def test_startup_skips_schema_without_database(monkeypatch: pytest.MonkeyPatch) -> None:
    import scholarpay.db.client as db_client
    import scholarpay.main as main

    calls = []
    monkeypatch.setattr(main, "settings", Settings(db_host="", db_user="", db_name=""))
    monkeypatch.setattr(db_client, "init_schema", lambda: calls.append("init"))
    with TestClient(app):
        pass
    assert calls == []
