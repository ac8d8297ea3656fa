"""
Deadline-bounded fetches with linear-backoff retries for upstream sites.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError


DEFAULT_TIMEOUT = 8.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF = 1.0

DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'User-Agent': ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                   '(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36'),
}


class FetchError(Exception):
    """Upstream request failed before a response was received."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    """Upstream request was aborted at its deadline."""
    pass


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class UpstreamFetcher:
    """
    Fetches upstream pages, aborting each attempt at a deadline and
    retrying failed attempts with linear backoff.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 backoff: float = DEFAULT_BACKOFF,
                 headers: Optional[Dict[str, str]] = None,
                 max_content_size: int = 10 * 1024 * 1024,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self.max_content_size = max_content_size
        self._sleep = sleep

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'timeouts': 0,
            'retries': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(headers=self.headers)
            self.logger.debug("UpstreamFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("UpstreamFetcher session closed")

    async def fetch_with_timeout(self, url: str, options: Optional[Dict[str, Any]] = None,
                                 timeout: Optional[float] = None) -> FetchResult:
        """
        Fetch a URL, aborting the request if it has not completed in time.

        Args:
            url: The URL to fetch
            options: method, headers, params, data or json for the request
            timeout: Seconds before the request is aborted

        Returns:
            FetchResult for any HTTP status

        Raises:
            FetchTimeoutError: the deadline passed before the body was read
            FetchError: the request failed at the transport level
        """
        await self.start()
        options = dict(options or {})
        method = options.pop('method', 'GET')
        deadline = timeout if timeout is not None else self.timeout
        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            async with self.session.request(method, url, timeout=ClientTimeout(total=deadline),
                                            **options) as response:
                content = await self._read_content(response)
                fetch_time = time.time() - start_time

                if content:
                    self.stats['total_bytes_downloaded'] += len(content)
                self.stats['successful_requests'] += 1

                self.logger.debug(f"Fetched {url}: {response.status} ({len(content) if content else 0} chars)")
                return FetchResult(
                    url=url,
                    status_code=response.status,
                    content=content,
                    headers=dict(response.headers),
                    content_type=response.headers.get('content-type', '').lower(),
                    encoding=response.charset,
                    fetch_time=fetch_time
                )

        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            self.stats['timeouts'] += 1
            raise FetchTimeoutError(f"Request to {url} timed out after {deadline}s", url=url) from e

        except ClientError as e:
            self.stats['failed_requests'] += 1
            raise FetchError(f"Request to {url} failed: {e}", url=url) from e

    async def retry_fetch(self, url: str, options: Optional[Dict[str, Any]] = None,
                          max_retries: Optional[int] = None) -> FetchResult:
        """
        Fetch a URL, retrying failed attempts.

        Makes up to max_retries + 1 attempts, waiting backoff * n seconds
        after the n-th failure. Returns the first successful attempt.

        Raises:
            FetchError: the error of the last attempt when every attempt failed
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempts = retries + 1
        last_error: Optional[FetchError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self.fetch_with_timeout(url, options)
            except FetchError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.backoff * attempt
                self.stats['retries'] += 1
                self.logger.warning(
                    f"Fetch attempt {attempt}/{attempts} for {url} failed ({e}); retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        self.logger.error(f"Giving up on {url} after {attempts} attempts: {last_error}")
        raise last_error

    async def _read_content(self, response) -> Optional[str]:
        """Read the response body with a size limit and tolerant decoding."""
        content_length = response.headers.get('content-length')
        try:
            declared_size = int(content_length) if content_length else None
        except ValueError:
            # Unparsable length: the streaming cap below still applies.
            declared_size = None
        if declared_size is not None and declared_size > self.max_content_size:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        content_bytes = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            content_bytes.extend(chunk)
            if len(content_bytes) > self.max_content_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'latin-1', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue

            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()

    def reset_stats(self):
        """Reset statistics counters."""
        for key in self.stats:
            self.stats[key] = 0


async def fetch_with_timeout(url: str, options: Optional[Dict[str, Any]] = None,
                             timeout: float = DEFAULT_TIMEOUT) -> FetchResult:
    """Single deadline-bounded fetch on a short-lived session."""
    async with UpstreamFetcher(timeout=timeout) as fetcher:
        return await fetcher.fetch_with_timeout(url, options)


async def retry_fetch(url: str, options: Optional[Dict[str, Any]] = None,
                      max_retries: int = DEFAULT_MAX_RETRIES, **fetcher_options) -> FetchResult:
    """Retried deadline-bounded fetch on a short-lived session."""
    async with UpstreamFetcher(max_retries=max_retries, **fetcher_options) as fetcher:
        return await fetcher.retry_fetch(url, options)
