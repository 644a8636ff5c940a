from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Protocol

import httpx

from scholarpay.config import Settings
from scholarpay.domain.enums import IpnNotificationType
from scholarpay.domain.errors import AuthError, GatewayError
from scholarpay.domain.models import OrderRequest
from scholarpay.domain.statuses import map_gateway_status

from .results import IpnRegistration, RefundResult, SubmitOrderResult, TransactionStatus
from .token_cache import AccessToken, TokenCache

logger = logging.getLogger(__name__)

# Pesapal tokens live five minutes; used when expiryDate is missing
DEFAULT_TOKEN_TTL = timedelta(minutes=5)

_FRACTION = re.compile(r"\.(\d+)")


class ProviderEventLog(Protocol):
    def log_provider_event(self, **fields: Any) -> None: ...


def parse_expiry(value: Any, now: datetime) -> datetime:
    """Turn Pesapal's ``expiryDate`` into an aware datetime."""
    if value is None or value == "":
        return now + DEFAULT_TOKEN_TTL
    if isinstance(value, (int, float)):
        return now + timedelta(seconds=float(value))
    text = str(value).strip()
    if text.isdigit():
        return now + timedelta(seconds=int(text))
    # fromisoformat wants 6 fractional digits; Pesapal sends 7
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("unparseable token expiry", extra={"event": str(value)})
        return now + DEFAULT_TOKEN_TTL
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _body_error(body: Dict[str, Any]) -> str | None:
    """Pesapal reports many failures inside a 200 response."""
    error = body.get("error")
    if isinstance(error, dict):
        if any(error.get(key) for key in ("code", "error_type", "message")):
            return str(error.get("message") or error.get("code") or error.get("error_type"))
        return None
    if error:
        return str(error)
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PesapalClient:
    """Pesapal API v3 client.

    Every call goes through the shared TokenCache. Failures surface as
    AuthError (credentials) or GatewayError (everything else); nothing is
    retried here.
    """

    def __init__(
        self,
        settings: Settings,
        token_cache: TokenCache | None = None,
        *,
        event_log: ProviderEventLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.base_url = settings.pesapal_api_url
        self.consumer_key = settings.pesapal_consumer_key
        self.consumer_secret = settings.pesapal_consumer_secret
        self.tokens = token_cache or TokenCache(grace_seconds=settings.token_grace_seconds)
        self.event_log = event_log
        self._transport = transport
        self._timeout = httpx.Timeout(settings.http_timeout, connect=settings.http_connect_timeout)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def authenticate(self) -> AccessToken:
        """Exchange consumer credentials for a short-lived bearer token."""
        if not self.consumer_key or not self.consumer_secret:
            raise AuthError("Pesapal consumer credentials not configured")
        url = f"{self.base_url}/Auth/RequestToken"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        payload = {"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret}
        try:
            status_code, body = await self._send("AUTH", "POST", url, headers=headers, json=payload)
        except GatewayError as exc:
            if exc.status_code in (400, 401, 403):
                logger.error("pesapal authentication rejected", extra={"response_code": exc.status_code})
                raise AuthError(
                    "Pesapal authentication failed", status_code=exc.status_code, body=exc.body
                ) from exc
            raise
        token = body.get("token")
        error = _body_error(body)
        if error or not token:
            logger.error("pesapal authentication rejected", extra={"response_code": status_code, "error": error})
            raise AuthError(
                f"Pesapal authentication failed: {error or 'no token received'}",
                status_code=status_code,
                body=body,
            )
        expires_at = parse_expiry(body.get("expiryDate"), datetime.now(timezone.utc))
        logger.info("pesapal authentication successful", extra={"event": expires_at.isoformat()})
        return AccessToken(value=str(token), expires_at=expires_at)

    async def submit_order(self, order: OrderRequest) -> SubmitOrderResult:
        order.validate()
        payload = {
            "id": order.merchant_reference,
            "currency": order.currency,
            "amount": float(order.amount),
            "description": order.description,
            "callback_url": order.callback_url,
            "notification_id": order.notification_id or self.settings.pesapal_default_notification_id,
            "billing_address": order.billing_address.as_payload(),
        }
        body = await self._call(
            "SUBMIT_ORDER",
            "POST",
            "/Transactions/SubmitOrderRequest",
            json=payload,
            reference=order.merchant_reference,
        )
        error = _body_error(body)
        tracking_id = body.get("order_tracking_id")
        if error or not tracking_id:
            logger.error(
                "pesapal order submission rejected",
                extra={"merchant_reference": order.merchant_reference, "error": error},
            )
            raise GatewayError(
                f"Pesapal order submission failed: {error or 'no order tracking id received'}",
                operation="SUBMIT_ORDER",
                body=body,
            )
        logger.info(
            "pesapal order submitted",
            extra={"merchant_reference": order.merchant_reference, "order_tracking_id": tracking_id},
        )
        return SubmitOrderResult(
            order_tracking_id=str(tracking_id),
            merchant_reference=str(body.get("merchant_reference") or order.merchant_reference),
            redirect_url=body.get("redirect_url"),
            status=str(body["status"]) if body.get("status") is not None else None,
            raw=body,
        )

    async def get_transaction_status(self, order_tracking_id: str) -> TransactionStatus:
        body = await self._call(
            "STATUS",
            "GET",
            "/Transactions/GetTransactionStatus",
            params={"orderTrackingId": order_tracking_id},
            reference=order_tracking_id,
        )
        error = _body_error(body)
        if error and body.get("payment_status_code") in (None, ""):
            raise GatewayError(
                f"Failed to get transaction status: {error}",
                operation="STATUS",
                body=body,
            )
        code = body.get("payment_status_code")
        return TransactionStatus(
            order_tracking_id=order_tracking_id,
            status_code=str(code) if code not in (None, "") else None,
            status=map_gateway_status(code),
            confirmation_code=body.get("confirmation_code") or None,
            currency=body.get("currency"),
            description=body.get("description"),
            payment_status_description=body.get("payment_status_description"),
            payment_method=body.get("payment_method") or body.get("payment_account"),
            amount=_to_decimal(body.get("amount")),
            merchant_reference=body.get("merchant_reference"),
            raw=body,
        )

    async def process_refund(self, confirmation_code: str, amount: Decimal, requested_by: str) -> RefundResult:
        payload = {
            "confirmation_code": confirmation_code,
            "amount": float(amount),
            "username": requested_by,
        }
        body = await self._call(
            "REFUND",
            "POST",
            "/Transactions/RefundRequest",
            json=payload,
            reference=confirmation_code,
        )
        error = _body_error(body)
        if error:
            logger.error(
                "pesapal refund rejected",
                extra={"confirmation_code": confirmation_code, "amount": amount, "error": error},
            )
            raise GatewayError(f"Pesapal refund failed: {error}", operation="REFUND", body=body)
        result = RefundResult(
            refund_id=str(body["refund_id"]) if body.get("refund_id") is not None else None,
            status=str(body["status"]) if body.get("status") is not None else None,
            message=body.get("message"),
            raw=body,
        )
        logger.info(
            "pesapal refund requested",
            extra={
                "confirmation_code": confirmation_code,
                "amount": amount,
                "refund_id": result.refund_id,
                "status": result.status,
            },
        )
        return result

    async def register_notification_url(
        self, url: str, notification_type: IpnNotificationType = IpnNotificationType.GET
    ) -> IpnRegistration:
        payload = {"url": url, "ipn_notification_type": notification_type.value}
        body = await self._call("REGISTER_IPN", "POST", "/URLSetup/RegisterIPN", json=payload, reference=url)
        error = _body_error(body)
        if error or not body.get("ipn_id"):
            raise GatewayError(
                f"Pesapal IPN registration failed: {error or 'no ipn id received'}",
                operation="REGISTER_IPN",
                body=body,
            )
        return IpnRegistration(
            notification_id=str(body["ipn_id"]),
            url=body.get("url"),
            status=str(body["ipn_status"]) if body.get("ipn_status") is not None else None,
            notification_type=body.get("ipn_notification_type_description") or body.get("ipn_notification_type"),
            created_date=body.get("created_date"),
            raw=body,
        )

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        reference: str | None = None,
    ) -> Dict[str, Any]:
        token = await self.tokens.get_valid_token(self.authenticate)
        headers = {"Authorization": f"Bearer {token.value}", "Accept": "application/json"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        try:
            _, body = await self._send(
                operation, method, f"{self.base_url}{path}", headers=headers, json=json, params=params, reference=reference
            )
        except GatewayError as exc:
            if exc.status_code == 401:
                # Token revoked early; the next call re-authenticates
                self.tokens.invalidate()
            raise
        return body

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        reference: str | None = None,
    ) -> tuple[int, Dict[str, Any]]:
        started = time.monotonic()
        logged_body = self._mask_body(json)
        try:
            async with self._client() as client:
                resp = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as exc:
            self._log_event(
                operation=operation,
                request_url=url,
                token=reference,
                request_headers=self._mask_headers(headers),
                request_body=logged_body,
                error_message=f"timeout: {exc}",
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            logger.warning("pesapal request timed out", extra={"endpoint": url, "event": operation})
            raise GatewayError(
                f"Pesapal {operation} timed out", operation=operation, transient=True
            ) from exc
        except httpx.HTTPError as exc:
            self._log_event(
                operation=operation,
                request_url=url,
                token=reference,
                request_headers=self._mask_headers(headers),
                request_body=logged_body,
                error_message=str(exc),
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            logger.warning("pesapal request failed", extra={"endpoint": url, "event": operation, "error": str(exc)})
            raise GatewayError(
                f"Pesapal {operation} transport error: {exc}", operation=operation, transient=True
            ) from exc

        latency_ms = int((time.monotonic() - started) * 1000)
        try:
            body: Any = resp.json()
        except ValueError:
            body = {"text": resp.text[:512]} if resp.text else {}
        if not isinstance(body, dict):
            body = {"data": body}
        error_message = None
        if resp.is_error:
            error_message = f"{operation} failed ({resp.status_code})"
        self._log_event(
            operation=operation,
            request_url=url,
            token=reference,
            request_headers=self._mask_headers(headers),
            request_body=logged_body,
            response_status=resp.status_code,
            response_headers=dict(resp.headers),
            response_body=body,
            error_message=error_message,
            latency_ms=latency_ms,
        )
        if resp.is_error:
            logger.info(
                "pesapal request rejected",
                extra={"endpoint": url, "event": operation, "response_code": resp.status_code},
            )
            raise GatewayError(
                f"Pesapal {operation} failed with HTTP {resp.status_code}",
                operation=operation,
                status_code=resp.status_code,
                body=body,
                transient=resp.status_code >= 500,
            )
        return resp.status_code, body

    def _mask_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        masked: Dict[str, str] = {}
        for key, value in (headers or {}).items():
            if key.lower() in {"authorization"}:
                masked[key] = "***"
            else:
                masked[key] = value
        return masked

    def _mask_body(self, body: Dict[str, Any] | None) -> Dict[str, Any] | None:
        if body is None:
            return None
        return {key: ("***" if key == "consumer_secret" else value) for key, value in body.items()}

    def _log_event(
        self,
        *,
        operation: str,
        request_url: str,
        token: str | None = None,
        request_headers: Dict[str, str] | None = None,
        request_body: Dict[str, Any] | None = None,
        response_status: int | None = None,
        response_headers: Dict[str, str] | None = None,
        response_body: Dict[str, Any] | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        if not self.settings.log_provider_events or self.event_log is None:
            return
        try:
            self.event_log.log_provider_event(
                provider="pesapal",
                direction="OUTBOUND",
                operation=operation,
                request_url=request_url,
                token=token,
                response_status=response_status,
                error_message=error_message,
                latency_ms=latency_ms,
                request_headers=request_headers,
                request_body=request_body,
                response_headers=response_headers,
                response_body=response_body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "provider event log error",
                extra={"event": str(exc)},
            )
