"""
Upstream fetching for worker jobs.
"""

from .fetcher import (
    UpstreamFetcher, FetchResult, FetchError, FetchTimeoutError,
    fetch_with_timeout, retry_fetch,
)

__all__ = [
    'UpstreamFetcher', 'FetchResult', 'FetchError', 'FetchTimeoutError',
    'fetch_with_timeout', 'retry_fetch',
]
