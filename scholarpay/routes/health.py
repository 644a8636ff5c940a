from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from scholarpay.db.client import get_conn
from scholarpay.dependencies import Container, get_container
from scholarpay.domain.statuses import PaymentStatus

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _database_connected(container: Container) -> bool | None:
    if not container.settings.db_enabled:
        return None
    try:
        with get_conn() as conn:
            if conn is None:
                return False
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        return True
    except Exception as exc:  # noqa: BLE001
        logger.info("health database probe failed", extra={"error": str(exc)})
        return False


def _collect_payment_metrics(container: Container, captured_at: datetime) -> dict[str, Any]:
    metrics: dict[str, Any] = {"status_counts": {}, "pending": 0, "oldest_pending_age_seconds": None}
    try:
        counts = container.store.count_by_status()
        pending = container.store.list_by_status(PaymentStatus.PENDING)
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
        return metrics
    metrics["status_counts"] = {status.value: int(counts.get(status.value, 0)) for status in PaymentStatus}
    metrics["pending"] = metrics["status_counts"][PaymentStatus.PENDING.value]
    # stuck payments show up here when neither callback nor IPN arrives
    created = [p.created_at for p in pending if p.created_at is not None]
    if created:
        metrics["oldest_pending_age_seconds"] = int((captured_at - min(created)).total_seconds())
    return metrics


@router.get("/health/metrics")
async def health_metrics(container: Container = Depends(get_container)) -> dict[str, Any]:
    """Detailed service health endpoint with lightweight operational metrics."""

    captured_at = datetime.now(timezone.utc)
    db_connected = _database_connected(container)
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    token = container.client.tokens.token
    status = "degraded" if db_connected is False else "ok"

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "gateway": "pesapal",
            "environment": container.settings.pesapal_environment,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "gateway": {
            "base_url": container.client.base_url,
            "token_cached": token is not None,
            "token_expires_at": token.expires_at.isoformat() if token else None,
        },
        "database": {
            "enabled": container.settings.db_enabled,
            "connected": db_connected,
            "schema": container.settings.db_schema or None,
        },
        "payments": _collect_payment_metrics(container, captured_at),
    }
