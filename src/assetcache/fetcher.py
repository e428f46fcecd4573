"""
Streaming HTTP fetcher for large binary assets.

Performs a single streamed GET per call, reports percentage progress as bytes
arrive, and assembles the complete payload. Retries are left to callers.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import httpx

from assetcache import __version__
from assetcache.exceptions import FetchCancelledError, FetchError, FetchTimeoutError
from assetcache.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = f"assetcache/{__version__}"

DEFAULT_CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int], None]


class CancellationToken:
    """Cooperative cancellation signal for downloads.

    The fetcher checks the token between chunks; cancelling it stops the
    download at the next chunk boundary and closes the response.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self, url: str) -> None:
        """Raise FetchCancelledError if the token has been cancelled."""
        if self.cancelled:
            raise FetchCancelledError(
                "Download cancelled", url=url, context={"reason": self.reason}
            )


class _ProgressReporter:
    """Converts byte counts into deduplicated, monotonic percentages."""

    def __init__(self, callback: ProgressCallback | None, total: int | None) -> None:
        self._callback = callback
        self._total = total if total and total > 0 else None
        self._last = -1

    @property
    def determinate(self) -> bool:
        return self._total is not None

    def emit(self, percent: int) -> None:
        if self._callback is None:
            return
        percent = max(0, min(100, percent))
        if percent <= self._last:
            return
        self._last = percent
        self._callback(percent)

    def update(self, received: int) -> None:
        if self._total is not None:
            self.emit(received * 100 // self._total)


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


class StreamingFetcher:
    """Fetches binary assets over HTTP with progress reporting.

    Features:
    - Streamed download, progress computed from Content-Length
    - Exactly one attempt per call (no retry)
    - Cooperative cancellation via CancellationToken
    - Optional whole-download timeout
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        user_agent: str = USER_AGENT,
    ) -> None:
        """Initialize the fetcher.

        Args:
            client: HTTP client to use. When omitted one is created lazily and
                closed by close().
            timeout: Default whole-download timeout in seconds.
            chunk_size: Streaming read size in bytes.
            user_agent: User-Agent header for the owned client.
        """
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
                # Whole-download timeouts are applied in fetch()
                timeout=httpx.Timeout(30.0, read=None),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(
        self,
        url: str,
        on_progress: ProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Download url and return its body.

        Args:
            url: URL to fetch.
            on_progress: Called with 0..100 as the body arrives. Only called
                with intermediate values when Content-Length is known; with an
                unknown length it is called once with 100 at the end.
            cancel_token: Checked between chunks.
            timeout: Whole-download timeout in seconds, overriding the default.

        Returns:
            The complete response body.

        Raises:
            FetchError: Non-2xx status, transport failure or truncated body.
            FetchCancelledError: The token was cancelled.
            FetchTimeoutError: The download exceeded its timeout.
        """
        effective_timeout = timeout if timeout is not None else self.timeout
        if cancel_token:
            cancel_token.raise_if_cancelled(url)

        try:
            if effective_timeout is None:
                return await self._download(url, on_progress, cancel_token)
            return await asyncio.wait_for(
                self._download(url, on_progress, cancel_token), effective_timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("Download timed out", url=url, timeout=effective_timeout)
            raise FetchTimeoutError(
                "Download timed out", url=url, context={"timeout": effective_timeout}
            ) from e

    async def _download(
        self,
        url: str,
        on_progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> bytes:
        client = await self._get_client()
        chunks: list[bytes] = []

        try:
            async with client.stream("GET", url) as response:
                if not response.is_success:
                    raise FetchError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        url=url,
                        status_code=response.status_code,
                    )

                total = _content_length(response)
                reporter = _ProgressReporter(on_progress, total)
                if reporter.determinate:
                    reporter.emit(0)

                async for chunk in response.aiter_bytes(self.chunk_size):
                    if cancel_token:
                        cancel_token.raise_if_cancelled(url)
                    chunks.append(chunk)
                    reporter.update(response.num_bytes_downloaded)

                received = response.num_bytes_downloaded
                if total is not None and received < total:
                    raise FetchError(
                        "Response body shorter than Content-Length",
                        url=url,
                        status_code=response.status_code,
                        context={"expected": total, "received": received},
                    )
                reporter.emit(100)
        except httpx.HTTPError as e:
            logger.warning("Download failed", url=url, error=str(e))
            raise FetchError(
                f"Failed to fetch {url}", url=url, context={"error": str(e)}
            ) from e

        body = b"".join(chunks)
        logger.debug("Downloaded asset", url=url, size=len(body))
        return body
