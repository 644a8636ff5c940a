from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime


Authenticator = Callable[[], Awaitable[AccessToken]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    """Process-wide holder for the gateway bearer token.

    A token is reused until it is within ``grace_seconds`` of expiry. Callers
    that find no usable token queue on one lock, so a burst of requests after
    expiry results in a single authentication call.
    """

    def __init__(self, grace_seconds: int = 30, clock: Clock | None = None):
        self.grace = timedelta(seconds=grace_seconds)
        self._clock = clock or _utcnow
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken | None:
        return self._token

    def _usable(self, token: AccessToken | None) -> bool:
        return token is not None and token.expires_at - self.grace > self._clock()

    async def get_valid_token(self, authenticate: Authenticator) -> AccessToken:
        token = self._token
        if self._usable(token):
            return token  # type: ignore[return-value]
        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if self._usable(token):
                return token  # type: ignore[return-value]
            token = await authenticate()
            self._token = token
            logger.info("gateway token refreshed", extra={"event": token.expires_at.isoformat()})
            return token

    def invalidate(self) -> None:
        self._token = None
