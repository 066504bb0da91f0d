"""
Async bearer-token provider with per-audience caching and single-flight refresh.

One Credential is cached per audience (resource-management plane, directory
plane, ...). A request for an audience whose cached Credential is still valid
returns it without touching the network. An expired or absent Credential
triggers a refresh; concurrent callers for the same audience wait on the same
refresh instead of starting their own.

Credentials are immutable and are replaced, never mutated, on refresh. A
Credential is never handed out when it expires within the refresh margin.

Example:
    >>> provider = TokenProvider(AzureCredentialProvider())
    >>> credential = await provider.get_token(MANAGEMENT_AUDIENCE)
    >>> headers = {"Authorization": f"Bearer {credential.token}"}
    >>>
    >>> # After a 401, ask for a replacement of the rejected credential
    >>> credential = await provider.get_token(MANAGEMENT_AUDIENCE, rejected=credential)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.errors.exceptions import AuthError
from core.resilience.retry import AUTH_RETRY, RetryConfig, with_retry_async
from core.types import TokenSource

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TIMEOUT_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """
    Bearer token issued for one audience.

    Attributes:
        audience: Resource URL the token was issued for
        token: The access token string
        expires_at: UTC expiry timestamp
    """

    audience: str
    token: str
    expires_at: datetime

    def is_valid(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        """True while expiry lies strictly beyond now + margin."""
        now = now or _utcnow()
        return self.expires_at > now + timedelta(seconds=margin_seconds)

    def __repr__(self) -> str:
        # Keep tokens out of logs and tracebacks
        return (
            f"Credential(audience={self.audience!r}, token='***', "
            f"expires_at={self.expires_at.isoformat()})"
        )


class TokenProvider:
    """
    Caching, single-flight token accessor.

    The credential cache is the only mutable state shared between export
    workers; every write to it happens while holding that audience's lock.
    """

    def __init__(
        self,
        source: TokenSource,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        timeout_seconds: float = DEFAULT_TOKEN_TIMEOUT_SECONDS,
        retry_config: RetryConfig = AUTH_RETRY,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._source = source
        self._margin = refresh_margin_seconds
        self._timeout = timeout_seconds
        self._retry_config = retry_config
        self._clock = clock
        self._sleep = sleep
        self._credentials: dict[str, Credential] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.refresh_count = 0

    def _lock_for(self, audience: str) -> asyncio.Lock:
        lock = self._locks.get(audience)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[audience] = lock
        return lock

    def _cached(self, audience: str) -> Optional[Credential]:
        cached = self._credentials.get(audience)
        if cached is not None and cached.is_valid(self._margin, self._clock()):
            return cached
        return None

    async def get_token(
        self,
        audience: str,
        rejected: Optional[Credential] = None,
    ) -> Credential:
        """
        Get a valid Credential for the audience.

        Args:
            audience: Resource URL (e.g., "https://management.azure.com/")
            rejected: Credential the server just refused. Forces a refresh
                unless another caller already replaced it.

        Returns:
            Credential that does not expire within the refresh margin

        Raises:
            AuthError: If the identity cannot be validated or the issuer is
                unreachable after the configured retries
        """
        if rejected is None:
            cached = self._cached(audience)
            if cached is not None:
                return cached

        async with self._lock_for(audience):
            # Re-check: another caller may have refreshed while we waited
            cached = self._cached(audience)
            if cached is not None and (rejected is None or cached.token != rejected.token):
                return cached

            credential = await self._refresh(audience)
            self._credentials[audience] = credential
            return credential

    async def _acquire_once(self, audience: str) -> tuple[str, float]:
        return await asyncio.wait_for(
            asyncio.to_thread(self._source.acquire_token, audience),
            timeout=self._timeout,
        )

    async def _refresh(self, audience: str) -> Credential:
        acquire = with_retry_async(config=self._retry_config, sleep=self._sleep)(
            self._acquire_once
        )

        try:
            token, expires_on = await acquire(audience)
        except Exception as e:
            logger.error(
                "Token acquisition failed",
                extra={
                    "audience": audience,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:200],
                },
            )
            raise AuthError(
                f"Unable to obtain token for {audience}",
                cause=e,
                context={"audience": audience},
            ) from e

        credential = Credential(
            audience=audience,
            token=token,
            expires_at=datetime.fromtimestamp(expires_on, tz=timezone.utc),
        )

        if not credential.is_valid(self._margin, self._clock()):
            raise AuthError(
                f"Issuer returned a token for {audience} that expires within "
                f"{self._margin}s",
                context={"audience": audience, "expires_at": credential.expires_at.isoformat()},
            )

        self.refresh_count += 1
        logger.debug(
            "Acquired credential",
            extra={
                "audience": audience,
                "expires_at": credential.expires_at.isoformat(),
            },
        )
        return credential

    def clear(self, audience: Optional[str] = None) -> None:
        """Drop one or all cached credentials."""
        if audience:
            self._credentials.pop(audience, None)
        else:
            self._credentials.clear()

    def get_diagnostics(self) -> dict:
        """Seconds to expiry per cached audience, for logging at run end."""
        now = self._clock()
        return {
            "refresh_count": self.refresh_count,
            "audiences": {
                audience: round((cred.expires_at - now).total_seconds(), 1)
                for audience, cred in self._credentials.items()
            },
        }


__all__ = [
    "Credential",
    "TokenProvider",
    "DEFAULT_REFRESH_MARGIN_SECONDS",
    "DEFAULT_TOKEN_TIMEOUT_SECONDS",
]
