"""HTTP client for downloading iCalendar feeds."""

import asyncio
import ipaddress
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .exceptions import FeedUnreachable, InvalidFeedFormat
from .models import Fetched, FetchResult, NotModified
from .parser import CALENDAR_MARKER

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/calendar, application/calendar+xml, application/ics"
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


def get_conditional_headers(
    etag: Optional[str] = None, last_modified: Optional[str] = None
) -> dict[str, str]:
    """Get conditional request headers for caching.

    Args:
        etag: ETag value from previous response
        last_modified: Last-Modified value from previous response

    Returns:
        Dictionary of conditional headers
    """
    headers = {}

    if etag:
        headers["If-None-Match"] = etag

    if last_modified:
        headers["If-Modified-Since"] = last_modified

    return headers


def _parse_encoded_ip(hostname: str) -> Optional[ipaddress.IPv4Address]:
    """Decode decimal (2130706433) or hex (0x7f000001) IPv4 spellings."""
    try:
        if hostname.isdigit():
            return ipaddress.IPv4Address(int(hostname))
        if hostname.lower().startswith("0x"):
            return ipaddress.IPv4Address(int(hostname, 16))
    except (ValueError, ipaddress.AddressValueError):
        return None
    return None


def is_private_url(url: str) -> Optional[str]:
    """Check a feed URL against internal-network targets.

    Args:
        url: URL to check

    Returns:
        Reason the URL is refused, or None when it may be fetched
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        return f"Malformed URL: {e}"

    if parsed.scheme not in ("http", "https"):
        return f"Unsupported URL scheme: {parsed.scheme or '(none)'}"

    hostname = (parsed.hostname or "").strip("[]")
    if not hostname:
        return "URL has no hostname"

    if hostname.lower() in BLOCKED_HOSTNAMES:
        return f"Blocked private hostname: {hostname}"

    try:
        ip: Optional[Any] = ipaddress.ip_address(hostname)
    except ValueError:
        ip = _parse_encoded_ip(hostname)

    if ip is not None and (
        ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified
    ):
        return f"Blocked private address: {hostname}"

    return None


class ICSFetcher:
    """Async HTTP client for downloading iCalendar feeds with conditional GET."""

    def __init__(self, settings: Any, client: Optional[httpx.AsyncClient] = None):
        """Initialize feed fetcher.

        Args:
            settings: Application settings (timeouts, retries, size limits)
            client: Optional pre-built HTTP client; it is not closed by the fetcher
        """
        self.settings = settings
        self.client = client
        self._owns_client = client is None

        logger.debug("Feed fetcher initialized")

    async def __aenter__(self) -> "ICSFetcher":
        """Async context manager entry."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client exists."""
        if self.client is None or self.client.is_closed:
            timeout = httpx.Timeout(
                connect=10.0, read=self.settings.request_timeout, write=10.0, pool=30.0
            )
            self.client = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": f"{self.settings.app_name}/1.0.0 ICS-Client",
                    "Accept": ACCEPT_HEADER,
                    "Accept-Charset": "utf-8",
                },
            )
            self._owns_client = True
        return self.client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client and self.client is not None and not self.client.is_closed:
            await self.client.aclose()

    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> FetchResult:
        """Download a feed, honouring stored cache validators.

        Args:
            url: Feed URL
            etag: ETag from the previous successful fetch
            last_modified: Last-Modified from the previous successful fetch

        Returns:
            NotModified when the server answers 304, Fetched otherwise

        Raises:
            FeedUnreachable: Network failure, timeout, non-2xx status or refused URL
            InvalidFeedFormat: Empty, oversized or non-iCalendar body
        """
        if not self.settings.allow_private_hosts:
            reason = is_private_url(url)
            if reason:
                logger.error(f"Refusing to fetch {url}: {reason}")
                raise FeedUnreachable(f"URL blocked for security reasons: {reason}", 403)

        headers = {"Accept": ACCEPT_HEADER}
        headers.update(get_conditional_headers(etag, last_modified))

        try:
            response = await self._make_request_with_retry(url, headers)

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error fetching feed from {url}: {status}")
            raise FeedUnreachable(f"HTTP {status}: {e.response.reason_phrase}", status) from e

        except httpx.TimeoutException as e:
            logger.error(f"Timeout fetching feed from {url}: {e}")
            raise FeedUnreachable(
                f"Request timeout after {self.settings.request_timeout}s"
            ) from e

        except httpx.HTTPError as e:
            logger.error(f"Network error fetching feed from {url}: {e}")
            raise FeedUnreachable(f"Network error: {e}") from e

        if not self.settings.allow_private_hosts:
            self._check_redirects(url, response)

        return self._create_result(response)

    def _check_redirects(self, url: str, response: httpx.Response) -> None:
        """Refuse a response reached by redirecting to an internal-network target.

        Raises:
            FeedUnreachable: If any redirect hop or the final URL is private
        """
        for hop in [*response.history[1:], response]:
            reason = is_private_url(str(hop.url))
            if reason:
                logger.error(f"Refusing redirect from {url} to {hop.url}: {reason}")
                raise FeedUnreachable(f"Redirect blocked for security reasons: {reason}", 403)

    async def _make_request_with_retry(
        self, url: str, headers: dict[str, str]
    ) -> httpx.Response:
        """Make HTTP request, retrying transient failures with exponential backoff.

        Args:
            url: URL to fetch
            headers: Request headers

        Returns:
            HTTP response (2xx or 304)
        """
        client = await self._ensure_client()

        for attempt in range(self.settings.max_retries + 1):
            try:
                response = await client.get(url, headers=headers)

                if response.status_code != 304:
                    response.raise_for_status()

                logger.debug(f"Fetched {url} (attempt {attempt + 1})")
                return response

            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt >= self.settings.max_retries:
                    logger.error(f"All retry attempts failed for {url}")
                    raise

                backoff_time = self.settings.retry_backoff_factor**attempt
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.settings.max_retries + 1}), "
                    f"retrying in {backoff_time:.1f}s: {e}"
                )
                await asyncio.sleep(backoff_time)

        raise FeedUnreachable(f"Maximum retries exceeded for {url}")

    def _create_result(self, response: httpx.Response) -> FetchResult:
        """Turn an HTTP response into a fetch outcome."""
        etag = response.headers.get("etag")
        last_modified = response.headers.get("last-modified")

        if response.status_code == 304:
            logger.debug("Feed not modified (304)")
            return NotModified(etag=etag, last_modified=last_modified)

        if len(response.content) > self.settings.max_feed_bytes:
            raise InvalidFeedFormat(
                f"Feed too large: {len(response.content)} bytes "
                f"(limit {self.settings.max_feed_bytes})",
                response.status_code,
            )

        body = response.text
        if not body or not body.strip():
            raise InvalidFeedFormat("Empty feed body", response.status_code)

        if CALENDAR_MARKER not in body.upper():
            raise InvalidFeedFormat(
                "Response is not an iCalendar document", response.status_code
            )

        content_type = response.headers.get("content-type")
        logger.debug(f"Fetched feed content ({len(body)} chars, type {content_type})")

        return Fetched(
            body=body,
            status_code=response.status_code,
            etag=etag,
            last_modified=last_modified,
            content_type=content_type,
        )
