"""
Authenticated, paginated GETs against Azure Resource Manager and Microsoft Graph.

Status policy per page request:
    200          -> parse JSON
    401/403      -> refresh the credential once, retry the same page once,
                    then AuthError
    429/503      -> backoff (Retry-After honoured) up to max_retries,
                    then ThrottledError
    other 4xx    -> ClientError, not retried
    other 5xx,
    connection
    and timeout  -> backoff up to max_retries, then ServerError

Every request first takes one token from the audience's RateLimiter, which
is shared by all workers talking to that audience.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import aiohttp

from core.auth.token_provider import Credential, TokenProvider
from core.errors.exceptions import (
    AuthError,
    ClientError,
    PipelineError,
    ServerError,
    ThrottledError,
)
from core.logging.context import get_log_context
from core.resilience.rate_limiter import RateLimiter, RateLimiterConfig
from core.resilience.retry import RetryConfig
from tenant_export import metrics

logger = logging.getLogger(__name__)

THROTTLE_STATUSES = frozenset({429, 503})
AUTH_STATUSES = frozenset({401, 403})

# ARM uses nextLink, Graph uses @odata.nextLink
CONTINUATION_KEYS = ("nextLink", "@odata.nextLink")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def next_link(body: dict[str, Any]) -> Optional[str]:
    """Continuation URL of a page, None on the last page."""
    for key in CONTINUATION_KEYS:
        link = body.get(key)
        if link:
            return link
    return None


class PagedFetcher:
    """
    Lazy paginated reader shared by every export worker of a run.

    Usage:
        async with PagedFetcher(token_provider) as fetcher:
            async for record in fetcher.fetch(url, MANAGEMENT_AUDIENCE, page_size=200):
                ...
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        rate_limit_per_second: float = 10.0,
        max_retries: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        request_timeout_seconds: float = 30.0,
        max_connections: int = 20,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limiters: Optional[dict[str, RateLimiter]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._tokens = token_provider
        self._rate_limit = rate_limit_per_second
        self._max_retries = max_retries
        self._retry_config = RetryConfig(
            max_attempts=max_retries + 1,
            base_delay=backoff_base_seconds,
            max_delay=backoff_max_seconds,
        )
        self._timeout = request_timeout_seconds
        self._max_connections = max_connections
        self._session = session
        self._owns_session = session is None
        self._limiters: dict[str, RateLimiter] = dict(rate_limiters or {})
        self._sleep = sleep or asyncio.sleep
        self._closed = False
        self.request_count = 0

    async def __aenter__(self) -> "PagedFetcher":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError("PagedFetcher is closed, cannot create new session")
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._max_connections,
                limit_per_host=self._max_connections,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            await asyncio.sleep(0)
        self._session = None

    def limiter_for(self, audience: str) -> RateLimiter:
        """The shared rate budget for one API audience."""
        limiter = self._limiters.get(audience)
        if limiter is None:
            limiter = RateLimiter(
                RateLimiterConfig(
                    calls_per_second=self._rate_limit,
                    name=audience.split("//")[-1].rstrip("/"),
                )
            )
            self._limiters[audience] = limiter
        return limiter

    async def fetch(
        self,
        url: str,
        audience: str,
        page_size: Optional[int] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield raw records of a listing, following continuation links.

        Restartable only from the beginning: a new call starts at page one.

        Args:
            url: Listing URL (including api-version for ARM)
            audience: Token audience of the API
            page_size: Sent as $top on the first request only
            stop: Once set, no further continuation link is requested; the
                records of pages already fetched are still yielded

        Raises:
            AuthError, ThrottledError, ClientError, ServerError
        """
        params = {"$top": str(page_size)} if page_size else None
        page_url: Optional[str] = url
        page = 0

        while page_url:
            body = await self._get(page_url, audience, params)
            params = None  # continuation links already carry paging state
            page += 1

            records = body.get("value") or []
            metrics.pages_fetched_counter.labels(audience=audience).inc()
            logger.debug(
                "Fetched page",
                extra={"url": page_url, "page": page, "records": len(records)},
            )

            for record in records:
                yield record

            page_url = next_link(body)
            if page_url and stop is not None and stop.is_set():
                logger.debug("Stop requested, not following next link", extra={"url": url, "page": page})
                return

    async def get_json(
        self,
        url: str,
        audience: str,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Single non-paged GET with the same status policy as fetch()."""
        return await self._get(url, audience, params)

    async def _get(
        self,
        url: str,
        audience: str,
        params: Optional[dict[str, str]],
    ) -> dict[str, Any]:
        credential = await self._tokens.get_token(audience)
        auth_retried = False
        attempt = 0

        while True:
            await self.limiter_for(audience).acquire()

            try:
                status, body, retry_after = await self._send(url, params, credential)
            except (TimeoutError, asyncio.TimeoutError) as e:
                error: PipelineError = ServerError(
                    f"Timeout after {self._timeout}s: {url}",
                    cause=e,
                    context={"url": url},
                )
            except aiohttp.ClientError as e:
                error = ServerError(
                    f"Connection error: {e}",
                    cause=e,
                    context={"url": url},
                )
            else:
                if status == 200:
                    return body

                if status in AUTH_STATUSES:
                    if auth_retried:
                        metrics.fetch_failures_counter.labels(
                            audience=audience, error_type="AuthError"
                        ).inc()
                        raise AuthError(
                            f"Credential rejected twice ({status}): {url}",
                            context={"url": url, "status_code": status},
                        )
                    auth_retried = True
                    metrics.fetch_retries_counter.labels(audience=audience, reason="auth").inc()
                    logger.info(
                        "Credential rejected, refreshing once",
                        extra={"url": url, "http_status": status, "audience": audience},
                    )
                    credential = await self._tokens.get_token(audience, rejected=credential)
                    continue

                if status in THROTTLE_STATUSES:
                    error = ThrottledError(
                        f"Throttled ({status}): {url}",
                        retry_after=retry_after,
                        status_code=status,
                        context={"url": url},
                    )
                elif 400 <= status < 500:
                    metrics.fetch_failures_counter.labels(
                        audience=audience, error_type="ClientError"
                    ).inc()
                    logger.warning(
                        "Request rejected by API",
                        extra={"url": url, "http_status": status},
                    )
                    raise ClientError(
                        f"Client error ({status}): {url}",
                        status_code=status,
                        context={"url": url},
                    )
                else:
                    error = ServerError(
                        f"Server error ({status}): {url}",
                        status_code=status,
                        context={"url": url},
                    )

            if attempt >= self._max_retries:
                metrics.fetch_failures_counter.labels(
                    audience=audience, error_type=type(error).__name__
                ).inc()
                logger.warning(
                    "Retries exhausted",
                    extra={
                        "url": url,
                        "attempt": attempt + 1,
                        "error_type": type(error).__name__,
                        "error_message": error.message[:200],
                    },
                )
                raise error

            delay = self._retry_config.get_delay(attempt, error)
            attempt += 1
            reason = "throttled" if isinstance(error, ThrottledError) else "server"
            metrics.fetch_retries_counter.labels(audience=audience, reason=reason).inc()
            logger.info(
                "Retrying request",
                extra={
                    "url": url,
                    "attempt": attempt,
                    "max_attempts": self._max_retries + 1,
                    "delay_seconds": round(delay, 2),
                    "retry_after": getattr(error, "retry_after", None),
                    "error_type": type(error).__name__,
                },
            )
            await self._sleep(delay)

    async def _send(
        self,
        url: str,
        params: Optional[dict[str, str]],
        credential: Credential,
    ) -> tuple[int, Any, Optional[float]]:
        session = await self._ensure_session()
        self.request_count += 1
        start_time = asyncio.get_running_loop().time()

        async with session.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {credential.token}"},
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        ) as response:
            duration_ms = (asyncio.get_running_loop().time() - start_time) * 1000

            if response.status == 200:
                try:
                    body = await response.json(content_type=None)
                except ValueError as e:
                    raise aiohttp.ClientPayloadError(f"Malformed JSON body: {e}") from e
                if not isinstance(body, dict):
                    raise aiohttp.ClientPayloadError(
                        f"Expected a JSON object, got {type(body).__name__}"
                    )
                return response.status, body, None

            response_text = await response.text()
            logger.debug(
                "Non-200 response",
                extra={
                    **{k: v for k, v in get_log_context().items() if v},
                    "url": url,
                    "http_status": response.status,
                    "duration_ms": round(duration_ms, 1),
                    "error_message": response_text[:500],
                },
            )
            return (
                response.status,
                None,
                parse_retry_after(response.headers.get("Retry-After")),
            )


__all__ = [
    "PagedFetcher",
    "parse_retry_after",
    "next_link",
    "THROTTLE_STATUSES",
    "AUTH_STATUSES",
]
