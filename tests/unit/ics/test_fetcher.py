"""Unit tests for ICSFetcher."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from calendarsync.ics.exceptions import FeedUnreachable, InvalidFeedFormat
from calendarsync.ics.fetcher import ICSFetcher, get_conditional_headers, is_private_url
from calendarsync.ics.models import Fetched, NotModified

FEED_URL = "https://calendar.example.com/feed.ics"
FEED_BODY = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n"


def make_fetcher(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ICSFetcher(settings, client=client)


class TestConditionalHeaders:
    """Tests for conditional request header construction."""

    def test_no_validators(self):
        """Test that no validators produce no headers."""
        assert get_conditional_headers() == {}

    def test_both_validators(self):
        """Test that both validators are sent."""
        headers = get_conditional_headers('"abc"', "Wed, 01 Jan 2025 00:00:00 GMT")

        assert headers == {
            "If-None-Match": '"abc"',
            "If-Modified-Since": "Wed, 01 Jan 2025 00:00:00 GMT",
        }


class TestPrivateUrlCheck:
    """Tests for refusing internal-network feed URLs."""

    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost/cal.ics",
            "http://127.0.0.1/cal.ics",
            "http://10.0.0.5/cal.ics",
            "http://192.168.1.10/cal.ics",
            "http://169.254.169.254/latest/meta-data",
            "http://[::1]/cal.ics",
            "http://0.0.0.0/cal.ics",
            "http://2130706433/cal.ics",
            "http://0x7f000001/cal.ics",
            "ftp://calendar.example.com/cal.ics",
            "file:///etc/passwd",
            "https:///cal.ics",
        ],
    )
    def test_refused(self, url):
        """Test that private, loopback, link-local and non-HTTP targets are refused."""
        assert is_private_url(url) is not None

    @pytest.mark.parametrize(
        "url", [FEED_URL, "http://calendar.example.com:8080/a.ics", "https://93.184.216.34/c.ics"]
    )
    def test_allowed(self, url):
        """Test that public HTTP(S) URLs are allowed."""
        assert is_private_url(url) is None


class TestICSFetcher:
    """Test suite for feed retrieval."""

    @pytest.mark.asyncio
    async def test_successful_fetch(self, test_settings):
        """Test that a 200 response yields the body and validators."""

        def handler(request):
            return httpx.Response(
                200,
                text=FEED_BODY,
                headers={
                    "ETag": '"v1"',
                    "Last-Modified": "Wed, 01 Jan 2025 00:00:00 GMT",
                    "Content-Type": "text/calendar",
                },
            )

        fetcher = make_fetcher(test_settings, handler)
        result = await fetcher.fetch(FEED_URL)

        assert isinstance(result, Fetched)
        assert result.body == FEED_BODY
        assert result.etag == '"v1"'
        assert result.last_modified == "Wed, 01 Jan 2025 00:00:00 GMT"
        assert result.content_type == "text/calendar"

    @pytest.mark.asyncio
    async def test_conditional_headers_are_sent(self, test_settings):
        """Test that stored validators are sent with the request."""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(304, headers={"ETag": '"v1"'})

        fetcher = make_fetcher(test_settings, handler)
        result = await fetcher.fetch(
            FEED_URL, etag='"v1"', last_modified="Wed, 01 Jan 2025 00:00:00 GMT"
        )

        assert isinstance(result, NotModified)
        assert result.etag == '"v1"'
        assert seen["if-none-match"] == '"v1"'
        assert seen["if-modified-since"] == "Wed, 01 Jan 2025 00:00:00 GMT"
        assert "text/calendar" in seen["accept"]

    @pytest.mark.asyncio
    async def test_http_error_status(self, test_settings):
        """Test that a non-2xx status becomes FeedUnreachable with the status code."""
        fetcher = make_fetcher(test_settings, lambda request: httpx.Response(404))

        with pytest.raises(FeedUnreachable) as exc_info:
            await fetcher.fetch(FEED_URL)

        assert exc_info.value.status_code == 404
        assert "HTTP 404" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_raised(self, test_settings):
        """Test that timeouts are retried with backoff and finally reported."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        fetcher = make_fetcher(test_settings, handler)

        with patch("calendarsync.ics.fetcher.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(FeedUnreachable, match="timeout"):
                await fetcher.fetch(FEED_URL)

        assert len(calls) == test_settings.max_retries + 1
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.5]

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, test_settings):
        """Test that a transient network error is recovered by a retry."""
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, text=FEED_BODY)

        fetcher = make_fetcher(test_settings, handler)

        with patch("calendarsync.ics.fetcher.asyncio.sleep", new_callable=AsyncMock):
            result = await fetcher.fetch(FEED_URL)

        assert isinstance(result, Fetched)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_network_error_without_retries(self, test_settings):
        """Test that a network failure is reported as FeedUnreachable."""
        test_settings.max_retries = 0

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = make_fetcher(test_settings, handler)

        with pytest.raises(FeedUnreachable, match="Network error"):
            await fetcher.fetch(FEED_URL)

    @pytest.mark.asyncio
    async def test_non_calendar_body(self, test_settings):
        """Test that an HTML page is rejected as an invalid feed."""
        fetcher = make_fetcher(
            test_settings, lambda request: httpx.Response(200, text="<html>login</html>")
        )

        with pytest.raises(InvalidFeedFormat):
            await fetcher.fetch(FEED_URL)

    @pytest.mark.asyncio
    async def test_empty_body(self, test_settings):
        """Test that an empty body is rejected."""
        fetcher = make_fetcher(test_settings, lambda request: httpx.Response(200, text=""))

        with pytest.raises(InvalidFeedFormat, match="Empty"):
            await fetcher.fetch(FEED_URL)

    @pytest.mark.asyncio
    async def test_oversized_body(self, test_settings):
        """Test that a body over the size limit is rejected."""
        test_settings.max_feed_bytes = 10
        fetcher = make_fetcher(test_settings, lambda request: httpx.Response(200, text=FEED_BODY))

        with pytest.raises(InvalidFeedFormat, match="too large"):
            await fetcher.fetch(FEED_URL)

    @pytest.mark.asyncio
    async def test_private_url_is_refused_without_request(self, test_settings):
        """Test that internal addresses are refused before any request is made."""
        handler_called = []

        def handler(request):
            handler_called.append(request)
            return httpx.Response(200, text=FEED_BODY)

        fetcher = make_fetcher(test_settings, handler)

        with pytest.raises(FeedUnreachable) as exc_info:
            await fetcher.fetch("http://127.0.0.1/feed.ics")

        assert exc_info.value.status_code == 403
        assert handler_called == []

    @pytest.mark.asyncio
    async def test_redirect_to_private_address_is_refused(self, test_settings):
        """Test that a public URL redirecting to loopback is refused."""

        def handler(request):
            if request.url.host == "calendar.example.com":
                return httpx.Response(302, headers={"Location": "http://127.0.0.1/feed.ics"})
            return httpx.Response(200, text=FEED_BODY)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
        fetcher = ICSFetcher(test_settings, client=client)

        with pytest.raises(FeedUnreachable, match="Redirect blocked") as exc_info:
            await fetcher.fetch(FEED_URL)

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_redirect_between_public_hosts_is_followed(self, test_settings):
        """Test that redirects that stay on public hosts are accepted."""

        def handler(request):
            if request.url.host == "calendar.example.com":
                return httpx.Response(
                    301, headers={"Location": "https://cdn.example.org/feed.ics"}
                )
            return httpx.Response(200, text=FEED_BODY)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
        fetcher = ICSFetcher(test_settings, client=client)

        result = await fetcher.fetch(FEED_URL)

        assert isinstance(result, Fetched)
        assert result.body == FEED_BODY

    @pytest.mark.asyncio
    async def test_private_url_allowed_when_configured(self, test_settings):
        """Test that allow_private_hosts lifts the internal-address check."""
        test_settings.allow_private_hosts = True
        fetcher = make_fetcher(test_settings, lambda request: httpx.Response(200, text=FEED_BODY))

        result = await fetcher.fetch("http://127.0.0.1/feed.ics")

        assert isinstance(result, Fetched)

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, test_settings):
        """Test that the fetcher does not close a client it was given."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        fetcher = ICSFetcher(test_settings, client=client)

        await fetcher.close()

        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_context_manager_creates_and_closes_client(self, test_settings):
        """Test that the async context manager owns the client it creates."""
        async with ICSFetcher(test_settings) as fetcher:
            client = fetcher.client
            assert client is not None
            assert client.is_closed is False

        assert client.is_closed is True
