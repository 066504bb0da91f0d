"""Fixtures for export engine tests."""

from unittest.mock import AsyncMock

import pytest

from config.config import ExportConfig
from core.auth.token_provider import TokenProvider
from fakes import FakeSession, RecordingSink, StaticTokenSource
from tenant_export.fetcher import PagedFetcher


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def token_source():
    return StaticTokenSource()


@pytest.fixture
def sleep():
    """Recorded, instant replacement for asyncio.sleep."""
    return AsyncMock()


@pytest.fixture
def token_provider(token_source, sleep):
    return TokenProvider(token_source, sleep=sleep)


@pytest.fixture
def fetcher(session, token_provider, sleep):
    return PagedFetcher(
        token_provider,
        rate_limit_per_second=1000,
        max_retries=3,
        backoff_base_seconds=0.5,
        backoff_max_seconds=4.0,
        session=session,
        sleep=sleep,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def export_config():
    return ExportConfig(
        subscription_scope="all",
        page_size=100,
        max_concurrent_subscriptions=2,
        resolve_principals=False,
        max_retries=2,
        rate_limit_per_second=1000,
        sink_rate_limit_per_second=1000,
        sink_type="file",
        output_path="unused.jsonl",
    )
