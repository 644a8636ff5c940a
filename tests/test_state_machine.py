from __future__ import annotations

import pathlib
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from scholarpay.domain.errors import IllegalTransitionError, RefundError
from scholarpay.domain.models import PaymentRecord
from scholarpay.domain.state_machine import PaymentStateMachine
from scholarpay.domain.statuses import PaymentStatus, map_gateway_status


def _payment(status: PaymentStatus = PaymentStatus.PENDING, **kwargs) -> PaymentRecord:
    data = dict(
        merchant_reference="MALAIKA_1714557300_abcdEFGH",
        amount=Decimal("100.00"),
        currency="KES",
        user_id=1,
        description="Application fee",
        status=status,
    )
    data.update(kwargs)
    return PaymentRecord(**data)


@pytest.mark.parametrize(
    "code, expected",
    [
        ("1", PaymentStatus.COMPLETED),
        ("2", PaymentStatus.FAILED),
        ("3", PaymentStatus.CANCELLED),
        (1, PaymentStatus.COMPLETED),
        (" 2 ", PaymentStatus.FAILED),
        ("0", PaymentStatus.PENDING),
        ("", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
        ("7", PaymentStatus.PENDING),
    ],
)
def test_map_gateway_status(code, expected) -> None:
    assert map_gateway_status(code) == expected


def test_terminal_statuses() -> None:
    assert not PaymentStatus.PENDING.is_terminal
    assert all(
        s.is_terminal
        for s in (
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
        )
    )


def test_pending_to_completed_sets_processed_at_once() -> None:
    machine = PaymentStateMachine()
    payment = _payment()
    first = datetime(2024, 5, 1, tzinfo=timezone.utc)

    transition = machine.apply_gateway_status(payment, PaymentStatus.COMPLETED, now=first)
    assert transition.changed
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.processed_at == first

    again = machine.apply_gateway_status(payment, PaymentStatus.COMPLETED, now=first + timedelta(hours=1))
    assert not again.changed
    assert payment.processed_at == first


@pytest.mark.parametrize(
    "status", [PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED]
)
def test_gateway_pending_never_regresses(status: PaymentStatus) -> None:
    payment = _payment(status)
    transition = PaymentStateMachine().apply_gateway_status(payment, PaymentStatus.PENDING)
    assert not transition.changed
    assert payment.status == status


def test_failed_cannot_become_completed() -> None:
    payment = _payment(PaymentStatus.FAILED)
    with pytest.raises(IllegalTransitionError, match="already Failed"):
        PaymentStateMachine().apply_gateway_status(payment, PaymentStatus.COMPLETED)
    assert payment.status == PaymentStatus.FAILED
    assert payment.processed_at is None


def test_gateway_cannot_drive_refund_statuses() -> None:
    payment = _payment(PaymentStatus.COMPLETED)
    with pytest.raises(IllegalTransitionError):
        PaymentStateMachine().apply_gateway_status(payment, PaymentStatus.REFUNDED)


def test_refund_requires_completed_and_confirmation() -> None:
    machine = PaymentStateMachine()
    with pytest.raises(RefundError, match="Only completed"):
        machine.check_refund(_payment(PaymentStatus.PENDING, confirmation_code="ABC"), Decimal("10"))
    with pytest.raises(RefundError, match="confirmation code"):
        machine.check_refund(_payment(PaymentStatus.COMPLETED), Decimal("10"))


def test_refund_boundaries() -> None:
    machine = PaymentStateMachine()
    payment = _payment(PaymentStatus.COMPLETED, confirmation_code="ABC")

    assert machine.check_refund(payment, Decimal("100.00")) == PaymentStatus.REFUNDED
    assert machine.check_refund(payment, Decimal("40.00")) == PaymentStatus.PARTIALLY_REFUNDED
    with pytest.raises(RefundError, match="exceeds"):
        machine.check_refund(payment, Decimal("100.01"))
    with pytest.raises(RefundError, match="positive"):
        machine.check_refund(payment, Decimal("0"))


def test_partial_refund_then_second_refund_rejected() -> None:
    machine = PaymentStateMachine()
    payment = _payment(PaymentStatus.COMPLETED, confirmation_code="ABC")

    machine.apply_refund(payment, Decimal("40.00"))
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.refunded_amount == Decimal("40.00")
    assert payment.refundable_amount == Decimal("60.00")

    with pytest.raises(RefundError):
        machine.apply_refund(payment, Decimal("60.00"))
    assert payment.refunded_amount == Decimal("40.00")


def test_refund_window() -> None:
    machine = PaymentStateMachine(refund_window_days=30)
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    payment = _payment(PaymentStatus.COMPLETED, confirmation_code="ABC", created_at=created)

    machine.check_refund(payment, Decimal("10"), now=created + timedelta(days=29))
    with pytest.raises(RefundError, match="window"):
        machine.check_refund(payment, Decimal("10"), now=created + timedelta(days=31))
