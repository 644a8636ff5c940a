from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from scholarpay.config import settings
from scholarpay.logging import setup_logging
from scholarpay.routes import health, payments
from scholarpay.utils.security import require_basic_auth

setup_logging()


def ensure_schema() -> None:
    if settings.db_enabled:
        from scholarpay.db.client import init_schema

        init_schema()


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_schema()
    yield


app = FastAPI(title="ScholarPay", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(payments.router)


@app.get("/openapi.json", include_in_schema=False)
def custom_openapi(_: None = Depends(require_basic_auth)):
    return JSONResponse(content=app.openapi())


@app.get("/docs", include_in_schema=False)
def custom_swagger_ui(_: None = Depends(require_basic_auth)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="ScholarPay API")


@app.get("/redoc", include_in_schema=False)
def custom_redoc(_: None = Depends(require_basic_auth)):
    return get_redoc_html(openapi_url="/openapi.json", title="ScholarPay API ReDoc")
