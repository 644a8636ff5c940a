from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from psycopg2.extras import Json

from scholarpay.db.client import get_conn
from scholarpay.domain.enums import PayableKind, PaymentType
from scholarpay.domain.errors import StaleRecordError
from scholarpay.domain.models import Payable, PaymentRecord
from scholarpay.domain.statuses import PaymentStatus


MONEY_QUANT = Decimal("0.01")

_COLUMNS = """
    id, merchant_reference, gateway_transaction_id, amount, currency, status,
    user_id, recipient_id, payable_kind, payable_id, payment_type, description,
    confirmation_code, payment_method, redirect_url, refunded_amount,
    gateway_response_log, processed_at, created_at, updated_at, version
"""


def _json(value: Any) -> Json:
    return Json(value, dumps=lambda obj: json.dumps(obj, default=str))


class PgPaymentStore:
    """PostgreSQL-backed store for payments using raw psycopg2.

    Writes are guarded by the ``version`` column: an UPDATE only lands when the
    row still carries the version the caller read.
    """

    @staticmethod
    def _normalize_amount(value: Any | None, *, default: Decimal | None = None) -> Decimal | None:
        if value is None:
            return default
        if isinstance(value, Decimal):
            amount = value
        else:
            try:
                amount = Decimal(str(value))
            except (InvalidOperation, TypeError, ValueError) as exc:
                raise ValueError("Invalid monetary amount") from exc
        return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)

    def _hydrate_payment(self, row: tuple[Any, ...]) -> PaymentRecord:
        (
            pid,
            merchant_reference,
            gateway_transaction_id,
            amount,
            currency,
            status,
            user_id,
            recipient_id,
            payable_kind,
            payable_id,
            payment_type,
            description,
            confirmation_code,
            payment_method,
            redirect_url,
            refunded_amount,
            response_log,
            processed_at,
            created_at,
            updated_at,
            version,
        ) = row
        amount_value = self._normalize_amount(amount)
        if amount_value is None:
            raise ValueError("Persisted payment amount cannot be NULL")
        payable = None
        if payable_kind and payable_id is not None:
            payable = Payable(kind=PayableKind(str(payable_kind)), id=int(payable_id))
        if isinstance(response_log, str):
            response_log = json.loads(response_log)
        return PaymentRecord(
            id=int(pid),
            merchant_reference=str(merchant_reference),
            gateway_transaction_id=str(gateway_transaction_id) if gateway_transaction_id else None,
            amount=amount_value,
            currency=str(currency).strip(),
            status=PaymentStatus(str(status)),
            user_id=int(user_id),
            recipient_id=int(recipient_id) if recipient_id is not None else None,
            payable=payable,
            payment_type=PaymentType(str(payment_type)) if payment_type else None,
            description=str(description),
            confirmation_code=str(confirmation_code) if confirmation_code else None,
            payment_method=str(payment_method) if payment_method else None,
            redirect_url=redirect_url,
            refunded_amount=self._normalize_amount(refunded_amount, default=Decimal("0")) or Decimal("0"),
            gateway_response_log=list(response_log or []),
            processed_at=processed_at,
            created_at=created_at,
            updated_at=updated_at,
            version=int(version),
        )

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> Optional[PaymentRecord]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM payment WHERE {where} LIMIT 1", params)
                row = cur.fetchone()
                return self._hydrate_payment(row) if row else None

    def add(self, payment: PaymentRecord) -> PaymentRecord:
        amount_value = self._normalize_amount(payment.amount)
        if amount_value is None:
            raise ValueError("payment.amount required")
        with get_conn() as conn:
            if conn is None:
                raise RuntimeError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO payment (
                        merchant_reference, gateway_transaction_id, amount, currency, status,
                        user_id, recipient_id, payable_kind, payable_id, payment_type, description,
                        confirmation_code, payment_method, redirect_url, refunded_amount,
                        gateway_response_log, processed_at, version
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                    RETURNING {_COLUMNS}
                    """,
                    (
                        payment.merchant_reference,
                        payment.gateway_transaction_id,
                        amount_value,
                        payment.currency,
                        payment.status.value,
                        payment.user_id,
                        payment.recipient_id,
                        payment.payable.kind.value if payment.payable else None,
                        payment.payable.id if payment.payable else None,
                        payment.payment_type.value if payment.payment_type else None,
                        payment.description,
                        payment.confirmation_code,
                        payment.payment_method,
                        payment.redirect_url,
                        self._normalize_amount(payment.refunded_amount, default=Decimal("0")),
                        _json(payment.gateway_response_log),
                        payment.processed_at,
                    ),
                )
                return self._hydrate_payment(cur.fetchone())

    def update(self, payment: PaymentRecord) -> PaymentRecord:
        """Persist mutable fields; amount, currency and reference never change."""
        with get_conn() as conn:
            if conn is None:
                raise RuntimeError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE payment
                       SET gateway_transaction_id = %s,
                           status = %s,
                           confirmation_code = %s,
                           payment_method = %s,
                           redirect_url = %s,
                           refunded_amount = %s,
                           gateway_response_log = %s,
                           processed_at = %s,
                           updated_at = now(),
                           version = version + 1
                     WHERE id = %s AND version = %s
                 RETURNING {_COLUMNS}
                    """,
                    (
                        payment.gateway_transaction_id,
                        payment.status.value,
                        payment.confirmation_code,
                        payment.payment_method,
                        payment.redirect_url,
                        self._normalize_amount(payment.refunded_amount, default=Decimal("0")),
                        _json(payment.gateway_response_log),
                        payment.processed_at,
                        payment.id,
                        payment.version,
                    ),
                )
                row = cur.fetchone()
                if row is None:
                    raise StaleRecordError(
                        f"Payment {payment.id} changed since version {payment.version}"
                    )
                return self._hydrate_payment(row)

    def get(self, payment_id: int) -> Optional[PaymentRecord]:
        return self._fetch_one("id = %s", (payment_id,))

    def get_by_merchant_reference(self, reference: str) -> Optional[PaymentRecord]:
        return self._fetch_one("merchant_reference = %s", (reference,))

    def get_by_gateway_transaction_id(self, tracking_id: str) -> Optional[PaymentRecord]:
        return self._fetch_one("gateway_transaction_id = %s", (tracking_id,))

    def list_by_user(self, user_id: int, limit: int = 15, offset: int = 0) -> list[PaymentRecord]:
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                      FROM payment
                     WHERE user_id = %s
                     ORDER BY created_at DESC, id DESC
                     LIMIT %s OFFSET %s
                    """,
                    (user_id, limit, offset),
                )
                return [self._hydrate_payment(row) for row in cur.fetchall() or []]

    def list_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM payment WHERE status = %s ORDER BY created_at ASC",
                    (status.value,),
                )
                return [self._hydrate_payment(row) for row in cur.fetchall() or []]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with get_conn() as conn:
            if conn is None:
                return counts
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM payment GROUP BY status")
                for status_value, count in cur.fetchall() or []:
                    counts[str(status_value)] = int(count)
        return counts

    def log_provider_event(
        self,
        *,
        provider: str,
        direction: str,
        operation: str,
        request_url: str | None = None,
        token: str | None = None,
        response_status: int | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
        request_headers: dict[str, Any] | None = None,
        request_body: dict[str, Any] | None = None,
        response_headers: dict[str, Any] | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO provider_event_log (
                        provider, direction, operation, request_url, token, response_status,
                        error_message, latency_ms, request_headers, request_body,
                        response_headers, response_body, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        provider,
                        direction,
                        operation,
                        request_url,
                        token,
                        response_status,
                        error_message,
                        latency_ms,
                        _json(request_headers) if request_headers is not None else None,
                        _json(request_body) if request_body is not None else None,
                        _json(response_headers) if response_headers is not None else None,
                        _json(response_body) if response_body is not None else None,
                        datetime.now(timezone.utc),
                    ),
                )
