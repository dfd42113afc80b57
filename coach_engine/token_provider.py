"""
Short-lived realtime credentials.

The API key never goes over the streaming socket: a temporary token is minted
over HTTPS first and passed as a query parameter when the socket opens.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

import aiohttp

from .config import LinkConfig, ServiceConfig
from .errors import AuthError

log = logging.getLogger("coach_engine.token")


class TokenProvider(Protocol):
    async def fetch_token(self) -> str: ...


class RealtimeTokenProvider:
    """POST {expires_in} to the token endpoint, authorised by the account API key."""

    def __init__(self, api_key: Optional[str], config: Optional[ServiceConfig] = None):
        self.api_key = api_key or ""
        self.config = config or ServiceConfig()

    async def fetch_token(self) -> str:
        if not self.api_key:
            raise AuthError("No API key configured (set ASSEMBLYAI_API_KEY)")
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.config.token_url,
                    headers={"authorization": self.api_key},
                    json={"expires_in": self.config.token_expires_in},
                ) as resp:
                    if resp.status != 200:
                        detail = await resp.text()
                        raise AuthError(f"Token request rejected ({resp.status}): {detail[:200]}")
                    data = await resp.json()
        except aiohttp.ClientError as exc:
            raise AuthError(f"Token request failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise AuthError("Token request timed out") from exc

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Token response did not contain a token")
        return token


async def fetch_token_with_retry(
    provider: TokenProvider,
    config: Optional[LinkConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Try ``token_attempts`` times with a fixed delay, then raise AuthError."""
    config = config or LinkConfig()
    last_exc: Optional[Exception] = None
    for attempt in range(1, config.token_attempts + 1):
        try:
            token = await provider.fetch_token()
            log.info("event=token_acquired attempt=%d", attempt)
            return token
        except AuthError as exc:
            last_exc = exc
            log.warning(
                "event=token_attempt_failed attempt=%d/%d error=%s",
                attempt, config.token_attempts, exc,
            )
        if attempt < config.token_attempts:
            await sleep(config.token_retry_delay)
    raise AuthError(f"Authentication failed after {config.token_attempts} attempts: {last_exc}")
