"""
Tests for TokenProvider.

Covers:
- Per-audience caching and refresh margin
- Single-flight refresh under concurrency
- Forced refresh of a rejected credential
- AuthError on unobtainable or already-expiring tokens
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.auth.credentials import GRAPH_AUDIENCE, MANAGEMENT_AUDIENCE
from core.auth.token_provider import Credential, TokenProvider
from core.errors.exceptions import AuthError


class CountingSource:
    """TokenSource issuing numbered tokens; thread-safe since calls run in to_thread."""

    def __init__(self, lifetime_seconds=3600, delay=0.0):
        self.lifetime_seconds = lifetime_seconds
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def acquire_token(self, audience):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append(audience)
            n = len(self.calls)
        return f"token-{n}", time.time() + self.lifetime_seconds


@pytest.fixture
def sleep():
    return AsyncMock()


class TestCredential:
    """Tests for the Credential value object."""

    def test_valid_outside_margin(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        credential = Credential("aud", "t", now + timedelta(seconds=61))

        assert credential.is_valid(60, now)
        assert not credential.is_valid(61, now)

    def test_repr_hides_token(self):
        credential = Credential("aud", "secret-token", datetime.now(timezone.utc))

        assert "secret-token" not in repr(credential)


class TestCaching:
    """Tests for per-audience caching."""

    async def test_cached_credential_reused(self, sleep):
        source = CountingSource()
        provider = TokenProvider(source, sleep=sleep)

        first = await provider.get_token(MANAGEMENT_AUDIENCE)
        second = await provider.get_token(MANAGEMENT_AUDIENCE)

        assert first is second
        assert source.calls == [MANAGEMENT_AUDIENCE]
        assert provider.refresh_count == 1

    async def test_audiences_cached_independently(self, sleep):
        source = CountingSource()
        provider = TokenProvider(source, sleep=sleep)

        mgmt = await provider.get_token(MANAGEMENT_AUDIENCE)
        graph = await provider.get_token(GRAPH_AUDIENCE)

        assert mgmt.token != graph.token
        assert source.calls == [MANAGEMENT_AUDIENCE, GRAPH_AUDIENCE]

    async def test_refreshes_inside_margin(self, sleep):
        """A credential expiring within the margin is replaced, not reused."""
        source = CountingSource(lifetime_seconds=3600)
        now = [datetime.now(timezone.utc)]
        provider = TokenProvider(source, refresh_margin_seconds=60, clock=lambda: now[0], sleep=sleep)

        first = await provider.get_token(MANAGEMENT_AUDIENCE)
        now[0] = first.expires_at - timedelta(seconds=30)
        source.lifetime_seconds = 7200
        second = await provider.get_token(MANAGEMENT_AUDIENCE)

        assert second.token != first.token
        assert len(source.calls) == 2

    async def test_clear(self, sleep):
        source = CountingSource()
        provider = TokenProvider(source, sleep=sleep)
        await provider.get_token(MANAGEMENT_AUDIENCE)

        provider.clear(MANAGEMENT_AUDIENCE)
        await provider.get_token(MANAGEMENT_AUDIENCE)

        assert len(source.calls) == 2

    async def test_diagnostics(self, sleep):
        provider = TokenProvider(CountingSource(), sleep=sleep)
        await provider.get_token(MANAGEMENT_AUDIENCE)

        diagnostics = provider.get_diagnostics()

        assert diagnostics["refresh_count"] == 1
        assert 3500 < diagnostics["audiences"][MANAGEMENT_AUDIENCE] <= 3600


class TestSingleFlight:
    """Tests for concurrent refresh coordination."""

    async def test_concurrent_callers_share_one_refresh(self, sleep):
        source = CountingSource(delay=0.05)
        provider = TokenProvider(source, sleep=sleep)

        credentials = await asyncio.gather(
            *(provider.get_token(MANAGEMENT_AUDIENCE) for _ in range(10))
        )

        assert len({c.token for c in credentials}) == 1
        assert source.calls == [MANAGEMENT_AUDIENCE]

    async def test_rejected_credential_forces_refresh(self, sleep):
        source = CountingSource()
        provider = TokenProvider(source, sleep=sleep)
        first = await provider.get_token(MANAGEMENT_AUDIENCE)

        second = await provider.get_token(MANAGEMENT_AUDIENCE, rejected=first)

        assert second.token != first.token
        assert len(source.calls) == 2

    async def test_rejection_already_replaced(self, sleep):
        """A caller rejecting an already-replaced credential gets the newer one."""
        source = CountingSource(delay=0.02)
        provider = TokenProvider(source, sleep=sleep)
        stale = await provider.get_token(MANAGEMENT_AUDIENCE)

        results = await asyncio.gather(
            provider.get_token(MANAGEMENT_AUDIENCE, rejected=stale),
            provider.get_token(MANAGEMENT_AUDIENCE, rejected=stale),
        )

        assert results[0].token == results[1].token != stale.token
        assert len(source.calls) == 2


class TestFailures:
    """Tests for AuthError paths."""

    async def test_source_failure_becomes_auth_error(self, sleep):
        source = MagicMock()
        source.acquire_token.side_effect = RuntimeError("issuer unreachable")
        provider = TokenProvider(source, sleep=sleep)

        with pytest.raises(AuthError) as exc_info:
            await provider.get_token(MANAGEMENT_AUDIENCE)

        assert exc_info.value.context["audience"] == MANAGEMENT_AUDIENCE
        assert source.acquire_token.call_count == 3
        assert sleep.await_count == 2

    async def test_transient_failure_recovers(self, sleep):
        source = MagicMock()
        source.acquire_token.side_effect = [
            ConnectionError("connection reset"),
            ("fresh", time.time() + 3600),
        ]
        provider = TokenProvider(source, sleep=sleep)

        credential = await provider.get_token(MANAGEMENT_AUDIENCE)

        assert credential.token == "fresh"

    async def test_already_expiring_token_rejected(self, sleep):
        """A token that expires inside the refresh margin is never handed out."""
        provider = TokenProvider(CountingSource(lifetime_seconds=10), refresh_margin_seconds=60, sleep=sleep)

        with pytest.raises(AuthError, match="expires within"):
            await provider.get_token(MANAGEMENT_AUDIENCE)

    async def test_timeout(self, sleep):
        source = CountingSource(delay=0.5)
        provider = TokenProvider(source, timeout_seconds=0.01, sleep=sleep)

        with pytest.raises(AuthError):
            await provider.get_token(MANAGEMENT_AUDIENCE)
