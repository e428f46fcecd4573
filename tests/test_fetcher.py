"""
Tests for the streaming fetcher.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

import httpx
import pytest

from assetcache.exceptions import FetchCancelledError, FetchError, FetchTimeoutError
from assetcache.fetcher import CancellationToken, StreamingFetcher

URL = "https://cdn.example.com/cores/nes.wasm"


async def body(chunks: list[bytes], delay: float = 0.0) -> AsyncIterator[bytes]:
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


def make_fetcher(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs: object
) -> tuple[StreamingFetcher, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StreamingFetcher(client=client, chunk_size=100, **kwargs), client


class TestFetchSuccess:
    """Tests for successful downloads."""

    async def test_progress_with_content_length(self) -> None:
        """Test percent progress computed from Content-Length."""
        data = [bytes([i]) * 100 for i in range(4)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-length": "400"}, content=body(data))

        fetcher, client = make_fetcher(handler)
        progress: list[int] = []

        result = await fetcher.fetch(URL, progress.append)

        assert result == b"".join(data)
        assert progress == [0, 25, 50, 75, 100]
        await client.aclose()

    async def test_unknown_length_reports_only_completion(self) -> None:
        """Test that without Content-Length only 100 is reported."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body([b"a" * 150, b"b" * 150]))

        fetcher, client = make_fetcher(handler)
        progress: list[int] = []

        result = await fetcher.fetch(URL, progress.append)

        assert len(result) == 300
        assert progress == [100]
        await client.aclose()

    async def test_progress_is_monotonic(self) -> None:
        """Test that percentages never repeat or go backwards."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, headers={"content-length": "1000"}, content=body([b"z" * 100] * 10)
            )

        fetcher, client = make_fetcher(handler)
        progress: list[int] = []

        await fetcher.fetch(URL, progress.append)

        assert progress == sorted(set(progress))
        assert progress[0] == 0 and progress[-1] == 100
        await client.aclose()

    async def test_injected_client_not_closed(self) -> None:
        """Test that close() leaves a caller-owned client open."""
        fetcher, client = make_fetcher(lambda request: httpx.Response(200, content=b"ok"))

        await fetcher.fetch(URL)
        await fetcher.close()

        assert not client.is_closed
        await client.aclose()


class TestFetchFailures:
    """Tests for failed downloads."""

    async def test_http_error_status(self) -> None:
        """Test that a non-2xx status fails with the status code."""
        fetcher, client = make_fetcher(lambda request: httpx.Response(404))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(URL)

        assert exc_info.value.status_code == 404
        assert exc_info.value.url == URL
        await client.aclose()

    async def test_transport_error(self) -> None:
        """Test that connection failures become FetchError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        fetcher, client = make_fetcher(handler)

        with pytest.raises(FetchError):
            await fetcher.fetch(URL)
        await client.aclose()

    async def test_truncated_body(self) -> None:
        """Test that a body shorter than Content-Length fails."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, headers={"content-length": "400"}, content=body([b"a" * 100, b"b" * 100])
            )

        fetcher, client = make_fetcher(handler)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(URL)

        assert exc_info.value.context["received"] == 200
        await client.aclose()

    async def test_timeout(self) -> None:
        """Test that a slow download is abandoned after the timeout."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body([b"a", b"b"], delay=1.0))

        fetcher, client = make_fetcher(handler)

        with pytest.raises(FetchTimeoutError):
            await fetcher.fetch(URL, timeout=0.05)
        await client.aclose()


class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_cancelled_before_start(self) -> None:
        """Test that a cancelled token prevents any request."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=b"never")

        fetcher, client = make_fetcher(handler)
        token = CancellationToken()
        token.cancel("user navigated away")

        with pytest.raises(FetchCancelledError) as exc_info:
            await fetcher.fetch(URL, cancel_token=token)

        assert requests == []
        assert exc_info.value.context["reason"] == "user navigated away"
        await client.aclose()

    async def test_cancelled_mid_stream(self) -> None:
        """Test that cancelling between chunks stops the download."""
        token = CancellationToken()

        async def cancelling_body() -> AsyncIterator[bytes]:
            yield b"a" * 100
            token.cancel()
            yield b"b" * 100
            yield b"c" * 100

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-length": "300"}, content=cancelling_body())

        fetcher, client = make_fetcher(handler)
        progress: list[int] = []

        with pytest.raises(FetchCancelledError):
            await fetcher.fetch(URL, progress.append, cancel_token=token)

        assert 100 not in progress
        await client.aclose()

    def test_cancel_keeps_first_reason(self) -> None:
        """Test that repeated cancels keep the first reason."""
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
