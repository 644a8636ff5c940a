from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from scholarpay.config import settings


_basic_scheme = HTTPBasic()
_bearer_scheme = HTTPBearer(auto_error=False, scheme_name="BearerAuth")


def _unauthorized(scheme: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": scheme},
    )


def require_basic_auth(credentials: HTTPBasicCredentials = Depends(_basic_scheme)) -> None:
    """Guard for the API docs: HTTP Basic against the configured admin pair."""

    username_valid = secrets.compare_digest(credentials.username or "", settings.api_basic_username)
    password_valid = secrets.compare_digest(credentials.password or "", settings.api_basic_password)
    if not (username_valid and password_valid):
        raise _unauthorized("Basic")


def verify_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
) -> None:
    """Guard for the platform-facing payment endpoints.

    The Pesapal callback and IPN routes do not use it: the gateway cannot send
    our token, and both only trigger a status query back to Pesapal.
    """

    if credentials is None:
        raise _unauthorized("Bearer")
    token = credentials.credentials.strip()
    if not token or not secrets.compare_digest(token, settings.api_bearer_token):
        raise _unauthorized("Bearer")
