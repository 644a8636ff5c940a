from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from scholarpay.dependencies import Container, get_container
from scholarpay.domain.dtos import (
    IpnRegisterRequest,
    IpnRegisterResponse,
    PaymentHistory,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentSummary,
    RefundRequest,
    RefundResponse,
)
from scholarpay.domain.errors import AuthError, GatewayError, PaymentError, RefundError, ValidationError
from scholarpay.domain.models import PaymentRecord
from scholarpay.utils.security import verify_bearer_token

router = APIRouter(prefix="/api/payments")
logger = logging.getLogger(__name__)


def _payment_to_summary(payment: PaymentRecord) -> PaymentSummary:
    return PaymentSummary(
        id=payment.id or 0,
        merchant_reference=payment.merchant_reference,
        gateway_transaction_id=payment.gateway_transaction_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        status_badge=payment.status.badge_color,
        description=payment.description,
        payment_type=payment.payment_type,
        payable_kind=payment.payable.kind if payment.payable else None,
        payable_id=payment.payable.id if payment.payable else None,
        user_id=payment.user_id,
        recipient_id=payment.recipient_id,
        confirmation_code=payment.confirmation_code,
        payment_method=payment.payment_method,
        refunded_amount=payment.refunded_amount,
        processed_at=payment.processed_at,
        created_at=payment.created_at,
    )


def _result_url(container: Container, **params: Any) -> str:
    base = container.settings.frontend_url.rstrip("/")
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{base}/payment/result?{query}"


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_bearer_token)],
)
async def initiate_payment(
    request: PaymentInitiateRequest,
    container: Container = Depends(get_container),
) -> PaymentInitiateResponse:
    logger.info(
        "initiate_payment received",
        extra={
            "endpoint": "/api/payments/initiate",
            "method": "POST",
            "amount": request.amount,
            "currency": request.currency,
        },
    )
    try:
        payment = await container.payments.initiate_payment(request)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway authentication failed"
        ) from exc
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment initiation failed: {exc}"
        ) from exc
    return PaymentInitiateResponse(
        payment_id=payment.id or 0,
        order_tracking_id=payment.gateway_transaction_id or "",
        redirect_url=payment.redirect_url,
        merchant_reference=payment.merchant_reference,
        status=payment.status,
    )


@router.get("/history", response_model=PaymentHistory, dependencies=[Depends(verify_bearer_token)])
async def payment_history(
    user_id: int = Query(..., ge=1),
    limit: int = Query(15, ge=1, le=100),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),
) -> PaymentHistory:
    items = container.payments.history(user_id, limit=limit, offset=offset)
    return PaymentHistory(payments=[_payment_to_summary(p) for p in items], limit=limit, offset=offset)


@router.get("/{payment_id}/status", response_model=PaymentSummary, dependencies=[Depends(verify_bearer_token)])
async def payment_status(payment_id: int, container: Container = Depends(get_container)) -> PaymentSummary:
    try:
        payment = await container.payments.check_status(payment_id)
    except PaymentError as exc:
        # Serve the stored state; the next check or notification will catch up
        logger.warning("payment status refresh failed", extra={"payment_id": payment_id, "error": str(exc)})
        payment = container.payments.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return _payment_to_summary(payment)


@router.post("/{payment_id}/refund", response_model=RefundResponse, dependencies=[Depends(verify_bearer_token)])
async def refund_payment(
    payment_id: int,
    req: RefundRequest,
    container: Container = Depends(get_container),
) -> RefundResponse:
    payment = container.payments.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    try:
        updated = await container.refunds.refund(payment, req.amount, req.reason, req.requested_by)
    except RefundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    refund_entries = [e for e in updated.gateway_response_log if e.get("kind") == "refund"]
    return RefundResponse(
        refund_id=refund_entries[-1].get("refund_id") if refund_entries else None,
        payment=_payment_to_summary(updated),
    )


@router.get("/pesapal/callback")
async def pesapal_callback(
    order_tracking_id: str | None = Query(default=None, alias="OrderTrackingId"),
    merchant_reference: str | None = Query(default=None, alias="OrderMerchantReference"),
    container: Container = Depends(get_container),
) -> RedirectResponse:
    logger.info(
        "pesapal callback received",
        extra={
            "endpoint": "/api/payments/pesapal/callback",
            "order_tracking_id": order_tracking_id,
            "merchant_reference": merchant_reference,
        },
    )
    try:
        payment = await container.reconciliation.handle_callback(order_tracking_id, merchant_reference)
    except PaymentError as exc:
        logger.error(
            "payment callback failed",
            extra={
                "order_tracking_id": order_tracking_id,
                "merchant_reference": merchant_reference,
                "error": str(exc),
            },
        )
        redirect_to = _result_url(container, status="failed", error=str(exc))
        return RedirectResponse(url=redirect_to, status_code=status.HTTP_302_FOUND)
    except Exception:  # noqa: BLE001
        # the payer's browser is mid-redirect; always land them on the result page
        logger.exception(
            "payment callback crashed",
            extra={"order_tracking_id": order_tracking_id, "merchant_reference": merchant_reference},
        )
        redirect_to = _result_url(container, status="failed", error="Payment processing error")
        return RedirectResponse(url=redirect_to, status_code=status.HTTP_302_FOUND)
    redirect_to = _result_url(container, status=payment.status.value, payment_id=payment.id)
    logger.info(
        "payment callback processed",
        extra={"payment_id": payment.id, "status": payment.status, "redirect_to": redirect_to},
    )
    return RedirectResponse(url=redirect_to, status_code=status.HTTP_302_FOUND)


@router.api_route("/pesapal/ipn", methods=["GET", "POST"])
async def pesapal_ipn(request: Request, container: Container = Depends(get_container)) -> JSONResponse:
    fields: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            fields = {**body, **fields}
    order_tracking_id = fields.get("OrderTrackingId")
    notification_type = fields.get("OrderNotificationType")
    merchant_reference = fields.get("OrderMerchantReference")
    logger.info(
        "pesapal ipn received",
        extra={
            "endpoint": "/api/payments/pesapal/ipn",
            "method": request.method,
            "order_tracking_id": order_tracking_id,
            "notification_type": notification_type,
        },
    )
    try:
        ack = await container.reconciliation.handle_ipn(
            str(order_tracking_id) if order_tracking_id else None,
            str(notification_type) if notification_type else None,
            str(merchant_reference) if merchant_reference else None,
        )
        content = ack.as_response()
    except Exception:  # noqa: BLE001
        # A non-200 makes Pesapal retry forever; report failure in the body instead
        logger.exception("payment IPN processing crashed", extra={"order_tracking_id": order_tracking_id})
        content = {
            "orderNotificationType": notification_type,
            "orderTrackingId": order_tracking_id,
            "orderMerchantReference": merchant_reference,
            "status": 500,
        }
    return JSONResponse(content=content, status_code=status.HTTP_200_OK)


@router.post(
    "/pesapal/ipn/register",
    response_model=IpnRegisterResponse,
    dependencies=[Depends(verify_bearer_token)],
)
async def register_ipn(
    req: IpnRegisterRequest,
    container: Container = Depends(get_container),
) -> IpnRegisterResponse:
    url = req.url or container.settings.pesapal_ipn_url
    try:
        registration = await container.client.register_notification_url(url, req.notification_type)
    except (AuthError, GatewayError) as exc:
        logger.error("pesapal IPN registration failed", extra={"endpoint": url, "error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"IPN registration failed: {exc}"
        ) from exc
    logger.info(
        "pesapal IPN registered",
        extra={"endpoint": registration.url, "event": registration.notification_id},
    )
    return IpnRegisterResponse(
        notification_id=registration.notification_id,
        url=registration.url,
        status=registration.status,
        notification_type=registration.notification_type,
    )
