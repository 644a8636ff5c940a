from __future__ import annotations

import json
import pathlib
import re
import sys
from decimal import Decimal

import httpx
import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from scholarpay.domain.dtos import PaymentInitiateRequest
from scholarpay.domain.enums import PayableKind, PaymentType
from scholarpay.domain.errors import GatewayError, ValidationError
from scholarpay.domain.statuses import PaymentStatus


def _request(**overrides) -> PaymentInitiateRequest:
    data = dict(
        user_id=7,
        amount=Decimal("100"),
        currency="KES",
        description="Scholarship support for term 2",
        payment_type=PaymentType.SCHOLARSHIP_SUPPORT,
        payable_kind=PayableKind.SPONSORSHIP,
        payable_id=12,
        email="amina@example.com",
        first_name="Amina",
        last_name="Otieno",
        phone="0712345678",
    )
    data.update(overrides)
    return PaymentInitiateRequest(**data)


@pytest.mark.asyncio
async def test_initiate_payment_persists_pending(container, gateway) -> None:
    payment = await container.payments.initiate_payment(_request())

    assert payment.id == 1
    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway_transaction_id == "trk-0001"
    assert payment.redirect_url
    assert re.fullmatch(r"MALAIKA_\d+_[A-Za-z0-9]{8}", payment.merchant_reference)
    assert payment.payable.kind == PayableKind.SPONSORSHIP
    assert payment.gateway_response_log[0]["kind"] == "submit_order"
    sent = json.loads(gateway.requests[-1].content)
    assert sent["id"] == payment.merchant_reference
    assert sent["billing_address"]["country_code"] == "KE"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"currency": "JPY"}, "Currency"),
        ({"amount": Decimal("99.99")}, "Minimum amount"),
        ({"payment_type": PaymentType.APPLICATION_FEE, "amount": Decimal("499")}, "Minimum amount"),
    ],
)
async def test_initiate_rejects_before_network(container, gateway, overrides, message) -> None:
    with pytest.raises(ValidationError, match=message):
        await container.payments.initiate_payment(_request(**overrides))
    assert gateway.calls == []


def test_payable_kind_and_id_go_together() -> None:
    with pytest.raises(ValueError):
        _request(payable_id=None)


@pytest.mark.asyncio
async def test_submission_retried_then_stored(container, gateway, store) -> None:
    gateway.queue("/Transactions/SubmitOrderRequest", httpx.Response(503, json={}))

    payment = await container.payments.initiate_payment(_request())

    assert gateway.count("/Transactions/SubmitOrderRequest") == 2
    first, second = [json.loads(r.content)["id"] for r in gateway.requests if r.url.path.endswith("SubmitOrderRequest")]
    assert first == second == payment.merchant_reference
    assert store.get(payment.id) is not None


@pytest.mark.asyncio
async def test_failed_submission_stores_nothing(container, gateway, store) -> None:
    gateway.queue("/Transactions/SubmitOrderRequest", httpx.Response(400, json={"error": {"message": "bad currency"}}))

    with pytest.raises(GatewayError):
        await container.payments.initiate_payment(_request())
    assert store.by_id == {}


@pytest.mark.asyncio
async def test_scholarship_scenario_100_kes(container, gateway, notifier) -> None:
    payment = await container.payments.initiate_payment(_request(amount=Decimal("100")))
    assert payment.status == PaymentStatus.PENDING

    gateway.set_status(payment.gateway_transaction_id, "1", confirmation_code="QWE123RTY")
    completed = await container.reconciliation.handle_callback(
        payment.gateway_transaction_id, payment.merchant_reference
    )
    assert completed.status == PaymentStatus.COMPLETED
    assert completed.confirmation_code == "QWE123RTY"
    assert completed.processed_at is not None

    refunded = await container.refunds.refund(completed, Decimal("100"), "Scholarship withdrawn", "admin")
    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refunded_amount == Decimal("100.00")
    assert notifier.events == [("completed", payment.id), ("refunded", payment.id)]


@pytest.mark.asyncio
async def test_check_status_refreshes_pending_only(container, gateway) -> None:
    payment = await container.payments.initiate_payment(_request())
    gateway.set_status(payment.gateway_transaction_id, "1")

    refreshed = await container.payments.check_status(payment.id)
    assert refreshed.status == PaymentStatus.COMPLETED
    calls = gateway.count("/Transactions/GetTransactionStatus")

    again = await container.payments.check_status(payment.id)
    assert again.status == PaymentStatus.COMPLETED
    assert gateway.count("/Transactions/GetTransactionStatus") == calls
    assert await container.payments.check_status(999) is None


@pytest.mark.asyncio
async def test_history_newest_first(container) -> None:
    first = await container.payments.initiate_payment(_request())
    second = await container.payments.initiate_payment(_request(description="Material donation for library"))
    await container.payments.initiate_payment(_request(user_id=8))

    history = container.payments.history(7)
    assert [p.id for p in history] == [second.id, first.id]
    assert container.payments.history(7, limit=1, offset=1)[0].id == first.id
