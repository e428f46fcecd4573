"""
Pytest configuration and fixtures for asset cache tests.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import patch

import pytest

from assetcache.config import Settings, clear_settings_cache
from assetcache.exceptions import StorageUnavailableError
from assetcache.service import CacheService
from assetcache.store import MemoryBlobStore, SQLiteBlobStore
from assetcache.types import CacheKey, CacheRecord, RecordMeta

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingFetcher:
    """Stand-in for StreamingFetcher that records every download.

    Responses map URLs to bytes or to an exception to raise. When gate is
    given, downloads block until it is set.
    """

    def __init__(
        self,
        responses: dict[str, bytes | Exception] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.responses = responses or {}
        self.gate = gate
        self.calls: list[str] = []
        self.timeouts: list[float | None] = []
        self.cancelled: list[str] = []
        self.closed = False

    async def fetch(
        self,
        url: str,
        on_progress: Callable[[int], None] | None = None,
        *,
        cancel_token: Any = None,
        timeout: float | None = None,
    ) -> bytes:
        self.calls.append(url)
        self.timeouts.append(timeout)
        if on_progress:
            on_progress(0)
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(url)
                raise
        result = self.responses[url]
        if isinstance(result, Exception):
            raise result
        if on_progress:
            on_progress(50)
            on_progress(100)
        return result

    async def close(self) -> None:
        self.closed = True


class FlakyStore(MemoryBlobStore):
    """Memory store whose reads or writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_reads = False
        self.write_error: Exception | None = None

    def _check_read(self) -> None:
        if self.fail_reads:
            raise StorageUnavailableError("Simulated read failure")

    async def get(self, key: CacheKey) -> CacheRecord | None:
        self._check_read()
        return await super().get(key)

    async def get_meta(self, key: CacheKey) -> RecordMeta | None:
        self._check_read()
        return await super().get_meta(key)

    async def put(self, record: CacheRecord) -> None:
        if self.write_error is not None:
            raise self.write_error
        await super().put(record)


async def settle() -> None:
    """Let background tasks scheduled on the loop run."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def fetcher() -> RecordingFetcher:
    """Provide a recording fetcher with no responses configured."""
    return RecordingFetcher()


@pytest.fixture
async def memory_store() -> MemoryBlobStore:
    """Provide an open in-memory store."""
    store = MemoryBlobStore()
    await store.open()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store(temp_dir: Path) -> SQLiteBlobStore:
    """Provide an open SQLite-backed store."""
    store = SQLiteBlobStore(temp_dir / "cache")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
async def service(
    memory_store: MemoryBlobStore, fetcher: RecordingFetcher, clock: FakeClock
) -> CacheService:
    """Provide a memory-backed service with a small capacity."""
    svc = CacheService(memory_store, fetcher, capacity_bytes=1000, clock=clock)
    await svc.open()
    yield svc
    await svc.close()


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "ASSET_CACHE_CACHE_DIR": ".test_asset_cache",
        "ASSET_CACHE_TTL_SECONDS": "3600",
        "ASSET_CACHE_MAX_CACHE_BYTES": "1048576",
        "ASSET_CACHE_OVERSIZED_POLICY": "store",
        "ASSET_CACHE_REQUEST_TIMEOUT": "12.5",
        "ASSET_CACHE_LOG_LEVEL": "debug",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance whose cache lives in temp_dir."""
    with patch.dict(os.environ, {"ASSET_CACHE_CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from assetcache.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
