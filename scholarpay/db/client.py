from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import SimpleConnectionPool

from scholarpay.config import settings

logger = logging.getLogger(__name__)

_pool: SimpleConnectionPool | None = None

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS payment (
    id BIGSERIAL PRIMARY KEY,
    merchant_reference VARCHAR(64) NOT NULL UNIQUE,
    gateway_transaction_id VARCHAR(64),
    amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
    currency CHAR(3) NOT NULL,
    status VARCHAR(32) NOT NULL DEFAULT 'Pending',
    user_id BIGINT NOT NULL,
    recipient_id BIGINT,
    payable_kind VARCHAR(32),
    payable_id BIGINT,
    payment_type VARCHAR(64),
    description TEXT NOT NULL,
    confirmation_code VARCHAR(64),
    payment_method VARCHAR(64),
    redirect_url TEXT,
    refunded_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    gateway_response_log JSONB NOT NULL DEFAULT '[]'::jsonb,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS payment_gateway_transaction_id_idx ON payment (gateway_transaction_id);
CREATE INDEX IF NOT EXISTS payment_user_created_idx ON payment (user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS provider_event_log (
    id BIGSERIAL PRIMARY KEY,
    provider VARCHAR(32) NOT NULL,
    direction VARCHAR(16) NOT NULL,
    operation VARCHAR(32) NOT NULL,
    request_url TEXT,
    token VARCHAR(255),
    response_status INTEGER,
    error_message TEXT,
    latency_ms INTEGER,
    request_headers JSONB,
    request_body JSONB,
    response_headers JSONB,
    response_body JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    if not settings.db_enabled:
        return
    dsn = settings.db_dsn.replace("postgresql+psycopg2://", "postgresql://")
    _pool = SimpleConnectionPool(1, 10, dsn=dsn)


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    if _pool is None:
        init_pool()
    if _pool is None:
        # DB not configured
        yield None  # type: ignore[misc]
        return
    conn: psycopg2.extensions.connection | None = None
    try:
        # Attempt to obtain a healthy connection (retry once on closed connections)
        for attempt in range(2):
            conn = _pool.getconn()
            try:
                if settings.db_schema:
                    with conn.cursor() as cur:
                        cur.execute(f"SET search_path TO {settings.db_schema}")
                break
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                _pool.putconn(conn, close=True)
                conn = None
                if attempt == 1:
                    raise
        yield conn  # type: ignore[misc]
        conn.commit()  # type: ignore[union-attr]
    except Exception:
        if conn is not None and not conn.closed:
            conn.rollback()
        raise
    finally:
        if conn is not None:
            _pool.putconn(conn)


def init_schema() -> None:
    """Create the payment tables if they do not exist yet."""
    with get_conn() as conn:
        if conn is None:
            return
        with conn.cursor() as cur:
            if settings.db_schema:
                cur.execute(f"CREATE SCHEMA IF NOT EXISTS {settings.db_schema}")
                cur.execute(f"SET search_path TO {settings.db_schema}")
            cur.execute(SCHEMA_DDL)
    logger.info("database schema ensured", extra={"event": settings.db_schema})
