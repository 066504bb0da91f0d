"""
Tests for PagedFetcher.

Covers:
- Pagination (nextLink / @odata.nextLink, $top on first request only)
- Status policy: 200, 401/403 refresh-once, 429/503 backoff, 4xx, 5xx
- Connection errors and malformed bodies
- Retry-After parsing
"""

import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest

from core.auth.credentials import GRAPH_AUDIENCE, MANAGEMENT_AUDIENCE
from core.errors.exceptions import AuthError, ClientError, ServerError, ThrottledError
from fakes import ARM, GRAPH, FakeResponse
from tenant_export.fetcher import next_link, parse_retry_after

LIST_URL = f"{ARM}/subscriptions/s1/resourcegroups?api-version=2021-04-01"
LIST_PATH = f"{ARM}/subscriptions/s1/resourcegroups"


async def collect(fetcher, url=LIST_URL, audience=MANAGEMENT_AUDIENCE, page_size=None):
    return [record async for record in fetcher.fetch(url, audience, page_size)]


class TestPagination:
    """Tests for continuation-link handling."""

    async def test_follows_next_link_until_absent(self, fetcher, session):
        """Records from every page are yielded in order."""
        page2 = f"{ARM}/page2"
        session.route(
            LIST_PATH,
            FakeResponse(200, {"value": [{"id": "a"}, {"id": "b"}], "nextLink": f"{page2}?token=x"}),
        )
        session.page(page2, [{"id": "c"}])

        records = await collect(fetcher)

        assert [r["id"] for r in records] == ["a", "b", "c"]
        assert session.paths() == [LIST_PATH, page2]

    async def test_page_size_sent_on_first_request_only(self, fetcher, session):
        """$top goes on the first request; continuation links carry paging state."""
        page2 = f"{ARM}/page2"
        session.route(LIST_PATH, FakeResponse(200, {"value": [], "nextLink": page2}))
        session.page(page2, [])

        await collect(fetcher, page_size=50)

        assert session.requests[0]["params"] == {"$top": "50"}
        assert session.requests[1]["params"] is None

    async def test_graph_odata_next_link(self, fetcher, session):
        """Graph continuation uses @odata.nextLink."""
        first = f"{GRAPH}/v1.0/users"
        second = f"{GRAPH}/v1.0/users/next"
        session.route(first, FakeResponse(200, {"value": [{"id": "u1"}], "@odata.nextLink": second}))
        session.page(second, [{"id": "u2"}])

        records = await collect(fetcher, url=first, audience=GRAPH_AUDIENCE)

        assert [r["id"] for r in records] == ["u1", "u2"]

    async def test_stop_event_halts_before_next_page(self, fetcher, session):
        """Records of the fetched page are still yielded; the next link is not requested."""
        page2 = f"{ARM}/page2"
        session.route(
            LIST_PATH,
            FakeResponse(200, {"value": [{"id": "a"}, {"id": "b"}], "nextLink": page2}),
        )
        session.page(page2, [{"id": "c"}])
        stop = asyncio.Event()

        records = []
        async for record in fetcher.fetch(LIST_URL, MANAGEMENT_AUDIENCE, stop=stop):
            records.append(record)
            stop.set()

        assert [r["id"] for r in records] == ["a", "b"]
        assert session.paths() == [LIST_PATH]

    async def test_empty_listing(self, fetcher, session):
        """A page without value yields nothing."""
        session.route(LIST_PATH, FakeResponse(200, {}))

        assert await collect(fetcher) == []

    async def test_bearer_token_attached(self, fetcher, session):
        """Requests carry the audience's bearer token."""
        session.page(LIST_PATH, [])

        await collect(fetcher)

        assert session.requests[0]["headers"]["Authorization"] == "Bearer token-1"

    def test_next_link_helper(self):
        assert next_link({"nextLink": "n"}) == "n"
        assert next_link({"@odata.nextLink": "o"}) == "o"
        assert next_link({"nextLink": None}) is None
        assert next_link({}) is None


class TestAuthPolicy:
    """Tests for 401/403 handling."""

    async def test_refreshes_once_and_retries_same_page(self, fetcher, session, token_source, sleep):
        """One rejected credential triggers exactly one refresh."""
        session.route(LIST_PATH, FakeResponse(401), FakeResponse(200, {"value": [{"id": "a"}]}))

        records = await collect(fetcher)

        assert records == [{"id": "a"}]
        assert token_source.calls == [MANAGEMENT_AUDIENCE, MANAGEMENT_AUDIENCE]
        assert session.requests[1]["headers"]["Authorization"] == "Bearer token-2"
        sleep.assert_not_awaited()

    async def test_second_rejection_raises_auth_error(self, fetcher, session):
        """A page rejected after refresh fails with AuthError."""
        session.route(LIST_PATH, FakeResponse(403))

        with pytest.raises(AuthError):
            await collect(fetcher)

        assert len(session.requests) == 2


class TestThrottlePolicy:
    """Tests for 429/503 backoff."""

    async def test_retry_after_is_honoured(self, fetcher, session, sleep):
        """A 429 with Retry-After waits that long, then succeeds."""
        session.route(
            LIST_PATH,
            FakeResponse(429, headers={"Retry-After": "2"}),
            FakeResponse(200, {"value": [{"id": "a"}]}),
        )

        records = await collect(fetcher)

        assert len(records) == 1
        sleep.assert_awaited_once_with(2.0)

    async def test_retry_after_capped_at_max_delay(self, fetcher, session, sleep):
        """Retry-After beyond backoff_max_seconds is capped."""
        session.route(
            LIST_PATH,
            FakeResponse(503, headers={"Retry-After": "120"}),
            FakeResponse(200, {"value": []}),
        )

        await collect(fetcher)

        sleep.assert_awaited_once_with(4.0)

    async def test_exhausted_throttling_raises(self, fetcher, session, sleep):
        """After max_retries retries the listing fails with ThrottledError."""
        session.route(LIST_PATH, FakeResponse(429))

        with pytest.raises(ThrottledError) as exc_info:
            await collect(fetcher)

        assert exc_info.value.status_code == 429
        assert sleep.await_count == 3
        assert len(session.requests) == 4

    async def test_backoff_grows_without_retry_after(self, fetcher, session, sleep):
        """Delays follow exponential backoff with equal jitter."""
        session.route(LIST_PATH, FakeResponse(429), FakeResponse(429), FakeResponse(200, {"value": []}))

        await collect(fetcher)

        first, second = (c.args[0] for c in sleep.await_args_list)
        assert 0.25 <= first <= 0.5
        assert 0.5 <= second <= 1.0


class TestErrorPolicy:
    """Tests for 4xx, 5xx and transport failures."""

    async def test_client_error_not_retried(self, fetcher, session, sleep):
        """Other 4xx fail immediately."""
        session.route(LIST_PATH, FakeResponse(404, "missing"))

        with pytest.raises(ClientError) as exc_info:
            await collect(fetcher)

        assert exc_info.value.status_code == 404
        sleep.assert_not_awaited()
        assert len(session.requests) == 1

    async def test_server_error_retried(self, fetcher, session, sleep):
        """5xx is retried with backoff."""
        session.route(LIST_PATH, FakeResponse(500), FakeResponse(200, {"value": [{"id": "a"}]}))

        records = await collect(fetcher)

        assert len(records) == 1
        assert sleep.await_count == 1

    async def test_server_error_exhausted(self, fetcher, session):
        """Persistent 5xx ends in ServerError."""
        session.route(LIST_PATH, FakeResponse(502))

        with pytest.raises(ServerError) as exc_info:
            await collect(fetcher)

        assert exc_info.value.status_code == 502

    async def test_connection_error_retried(self, fetcher, session, sleep):
        """Connection failures are retried like 5xx."""
        session.route(
            LIST_PATH,
            aiohttp.ClientConnectionError("reset"),
            FakeResponse(200, {"value": [{"id": "a"}]}),
        )

        records = await collect(fetcher)

        assert len(records) == 1
        assert sleep.await_count == 1

    async def test_timeout_becomes_server_error(self, fetcher, session):
        """Request timeouts end in ServerError once retries are spent."""
        session.route(LIST_PATH, TimeoutError())

        with pytest.raises(ServerError):
            await collect(fetcher)

        assert len(session.requests) == 4

    async def test_malformed_body_retried(self, fetcher, session):
        """A 200 whose body is not a JSON object is treated as a server fault."""
        session.route(
            LIST_PATH,
            FakeResponse(200, ValueError("Expecting value")),
            FakeResponse(200, ["not", "an", "object"]),
            FakeResponse(200, {"value": [{"id": "a"}]}),
        )

        records = await collect(fetcher)

        assert records == [{"id": "a"}]
        assert len(session.requests) == 3

    async def test_get_json_single_request(self, fetcher, session):
        """get_json returns the body of one non-paged GET."""
        session.route(f"{ARM}/subscriptions/s1", FakeResponse(200, {"id": "/subscriptions/s1"}))

        body = await fetcher.get_json(f"{ARM}/subscriptions/s1?api-version=x", MANAGEMENT_AUDIENCE)

        assert body == {"id": "/subscriptions/s1"}
        assert fetcher.request_count == 1


class TestRateLimiters:
    """Tests for per-audience limiter sharing."""

    def test_one_limiter_per_audience(self, fetcher):
        assert fetcher.limiter_for(MANAGEMENT_AUDIENCE) is fetcher.limiter_for(MANAGEMENT_AUDIENCE)
        assert fetcher.limiter_for(MANAGEMENT_AUDIENCE) is not fetcher.limiter_for(GRAPH_AUDIENCE)

    def test_limiter_uses_configured_rate(self, fetcher):
        assert fetcher.limiter_for(MANAGEMENT_AUDIENCE).config.calls_per_second == 1000


class TestParseRetryAfter:
    """Tests for Retry-After header parsing."""

    def test_seconds(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(" 1.5 ") == 1.5

    def test_negative_clamped(self):
        assert parse_retry_after("-3") == 0.0

    def test_http_date(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert parse_retry_after("Mon, 01 Jan 2024 12:00:30 GMT", now=now) == 30.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None
