"""
Cache service: the public surface of the asset cache.

Orchestrates the BlobStore, EvictionPolicy and StreamingFetcher:
- lookup with TTL validation and lazy deletion of expired records
- capacity-bounded inserts (eviction before write)
- prefetch and get-or-fetch with staged progress reporting
- de-duplication of concurrent downloads of the same key
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from assetcache.config import Settings, get_settings
from assetcache.eviction import EvictionPolicy, OldestFirstEviction, fits
from assetcache.exceptions import (
    CapacityExceededError,
    ConfigurationError,
    FetchCancelledError,
    FetchError,
    StorageError,
)
from assetcache.fetcher import CancellationToken, ProgressCallback, StreamingFetcher
from assetcache.logging import get_logger, log_context, set_stage
from assetcache.store import BlobStore, SQLiteBlobStore
from assetcache.types import (
    DEFAULT_CAPACITY_BYTES,
    DEFAULT_TTL,
    CacheKey,
    CacheRecord,
    CacheStats,
    Clock,
    KeyStatus,
    OversizedPolicy,
    RecordMeta,
    RecordStats,
    RequestState,
    Stage,
    utc_now,
)

logger = get_logger(__name__)

StageProgressCallback = Callable[[Stage, int], None]


def _age_ms(now: datetime, stored_at: datetime) -> int:
    return (now - stored_at) // timedelta(milliseconds=1)


@dataclass
class _InFlight:
    """A download shared by every caller asking for the same key."""

    key: CacheKey
    listeners: list[StageProgressCallback] = field(default_factory=list)
    waiters: int = 0
    task: asyncio.Task[bytes] | None = None
    last_event: tuple[Stage, int] | None = None

    def emit(self, stage: Stage, percent: int) -> None:
        if self.last_event == (stage, percent):
            return
        self.last_event = (stage, percent)
        for listener in list(self.listeners):
            try:
                listener(stage, percent)
            except Exception:
                # One caller's broken callback must not fail the shared download
                logger.exception(
                    "Progress listener failed", key=self.key.storage_key, stage=stage.value
                )


class CacheService:
    """Persistent, size- and time-bounded cache for large binary assets.

    Construct one per store and share it; tests build isolated instances.
    The store is opened on first use or by open(), and released by close().

    Example:
        async with CacheService(SQLiteBlobStore(".asset_cache")) as cache:
            data = await cache.get_or_fetch(CacheKey("nes"), "https://cdn/nes.wasm")
    """

    def __init__(
        self,
        store: BlobStore,
        fetcher: StreamingFetcher | None = None,
        *,
        ttl: timedelta = DEFAULT_TTL,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
        oversized_policy: OversizedPolicy = OversizedPolicy.REJECT,
        eviction: EvictionPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the service.

        Args:
            store: Backing blob store.
            fetcher: Downloader used on cache misses.
            ttl: Record time-to-live.
            capacity_bytes: Upper bound on the total size of stored payloads.
            oversized_policy: Handling of items larger than capacity_bytes.
            eviction: Policy choosing records to evict; oldest-first by default.
            clock: Source of the current time.

        Raises:
            ConfigurationError: If ttl or capacity_bytes is not positive.
        """
        if ttl <= timedelta(0):
            raise ConfigurationError("TTL must be positive", context={"ttl": str(ttl)})
        if capacity_bytes <= 0:
            raise ConfigurationError(
                "Capacity must be positive", context={"capacity_bytes": capacity_bytes}
            )

        self.store = store
        self.fetcher = fetcher or StreamingFetcher()
        self.ttl = ttl
        self.capacity_bytes = capacity_bytes
        self.oversized_policy = OversizedPolicy(oversized_policy)
        self.eviction = eviction or OldestFirstEviction()
        self._clock = clock
        self._open_lock = asyncio.Lock()
        self._in_flight: dict[CacheKey, _InFlight] = {}
        self._pending_deletes: dict[CacheKey, asyncio.Task[None]] = {}
        self._pending_writes: set[asyncio.Future[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> CacheService:
        """Build a SQLite-backed service from settings."""
        settings = settings or get_settings()
        fetcher = StreamingFetcher(
            timeout=settings.REQUEST_TIMEOUT,
            chunk_size=settings.CHUNK_SIZE,
            user_agent=settings.USER_AGENT,
        )
        return cls(
            SQLiteBlobStore(settings.CACHE_DIR),
            fetcher,
            ttl=settings.ttl,
            capacity_bytes=settings.MAX_CACHE_BYTES,
            oversized_policy=settings.OVERSIZED_POLICY,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the backing store. Safe to call more than once."""
        async with self._open_lock:
            if not self.store.is_open:
                await self.store.open()

    async def _ensure_open(self) -> None:
        if not self.store.is_open:
            await self.open()

    async def close(self) -> None:
        """Cancel in-flight downloads, finish pending writes and deletions, close the store."""
        in_flight = [e.task for e in self._in_flight.values() if e.task is not None]
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

        pending = [*self._pending_writes, *self._pending_deletes.values()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.fetcher.close()
        await self.store.close()

    async def __aenter__(self) -> CacheService:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Validity and lazy cleanup
    # ------------------------------------------------------------------

    def _is_expired(self, stored_at: datetime) -> bool:
        return self._clock() - stored_at >= self.ttl

    def _schedule_expired_delete(self, meta: RecordMeta) -> None:
        """Delete an expired record in the background."""
        key = meta.key
        if key in self._pending_deletes:
            return
        task = asyncio.create_task(self._delete_if_unchanged(meta))
        self._pending_deletes[key] = task
        task.add_done_callback(lambda _: self._pending_deletes.pop(key, None))

    async def _delete_if_unchanged(self, meta: RecordMeta) -> None:
        # A re-fetch may have replaced the record since it was found expired
        try:
            current = await self.store.get_meta(meta.key)
            if current is None or current.stored_at != meta.stored_at:
                return
            await self.store.delete(meta.key)
            logger.debug("Removed expired record", key=meta.key.storage_key)
        except StorageError as e:
            logger.warning(
                "Lazy removal of expired record failed",
                key=meta.key.storage_key,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    async def has(self, key: CacheKey) -> bool:
        """True iff a non-expired record exists for key.

        Raises:
            StorageUnavailableError: If the store cannot be read.
        """
        await self._ensure_open()
        meta = await self.store.get_meta(key)
        if meta is None:
            return False
        if self._is_expired(meta.stored_at):
            self._schedule_expired_delete(meta)
            return False
        return True

    async def get(self, key: CacheKey) -> bytes | None:
        """Get a payload if present and not expired.

        An expired record is deleted in the background; this call returns
        None without waiting for that.

        Raises:
            StorageUnavailableError: If the store cannot be read.
        """
        await self._ensure_open()
        record = await self.store.get(key)
        if record is None:
            return None
        if self._is_expired(record.stored_at):
            logger.debug("Cached record expired", key=key.storage_key)
            self._schedule_expired_delete(record.meta)
            return None
        return record.payload

    async def set(self, key: CacheKey, payload: bytes) -> None:
        """Store payload under key, evicting older records if needed.

        Raises:
            CapacityExceededError: Payload exceeds capacity under the reject policy.
            StorageUnavailableError: The store cannot be opened or read.
            StorageWriteError: Eviction or the write itself failed.
        """
        await self._ensure_open()
        size = len(payload)

        if size > self.capacity_bytes:
            if self.oversized_policy is OversizedPolicy.REJECT:
                raise CapacityExceededError(
                    "Item is larger than the cache capacity",
                    context={
                        "key": key.storage_key,
                        "size_bytes": size,
                        "capacity_bytes": self.capacity_bytes,
                    },
                )
            logger.warning(
                "Storing item larger than capacity",
                key=key.storage_key,
                size=size,
                capacity=self.capacity_bytes,
            )

        existing = await self.store.get_meta(key)
        replaced = existing.size_bytes if existing else 0
        current_total = await self.store.total_size() - replaced

        if not fits(current_total, size, self.capacity_bytes):
            await self.eviction.evict(
                self.store, size, self.capacity_bytes, exclude={key}
            )

        await self.store.put(CacheRecord.create(key, payload, stored_at=self._clock()))
        logger.info("Cached asset", key=key.storage_key, size=size)

    async def delete(self, key: CacheKey) -> bool:
        """Delete the record for key. Returns False if it was absent."""
        await self._ensure_open()
        return await self.store.delete(key)

    async def clear(self) -> int:
        """Delete every record. Returns the number removed."""
        await self._ensure_open()
        return await self.store.clear()

    async def purge_expired(self) -> int:
        """Eagerly delete every expired record. Returns the number removed."""
        await self._ensure_open()
        removed = 0
        for meta in await self.store.list():
            if self._is_expired(meta.stored_at) and await self.store.delete(meta.key):
                removed += 1
        if removed:
            logger.info("Purged expired records", removed=removed)
        return removed

    async def get_stats(self) -> CacheStats:
        """Snapshot of every stored record, expired ones included."""
        await self._ensure_open()
        now = self._clock()
        metas = await self.store.list()
        records = tuple(
            RecordStats(
                key=meta.key,
                size_bytes=meta.size_bytes,
                age_ms=_age_ms(now, meta.stored_at),
                expired=meta.is_expired(now, self.ttl),
            )
            for meta in metas
        )
        return CacheStats(
            total_size_bytes=sum(r.size_bytes for r in records),
            record_count=len(records),
            records=records,
        )

    async def status(self, key: CacheKey) -> KeyStatus:
        """Whether key is cached (and not expired), with its age."""
        await self._ensure_open()
        meta = await self.store.get_meta(key)
        if meta is None or self._is_expired(meta.stored_at):
            return KeyStatus(cached=False)
        return KeyStatus(cached=True, age_ms=_age_ms(self._clock(), meta.stored_at))

    # ------------------------------------------------------------------
    # Network-backed operations
    # ------------------------------------------------------------------

    async def prefetch(
        self,
        key: CacheKey,
        url: str,
        on_progress: ProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> None:
        """Download and cache url under key unless already cached.

        When the key is already cached, reports 100 and returns without any
        network access.

        Raises:
            FetchError: The download failed, was cancelled or timed out.
            CapacityExceededError: The asset is too large to cache.
            StorageError: The asset could not be persisted.
        """
        if await self._has_or_miss(key):
            if on_progress:
                on_progress(100)
            return

        def listener(stage: Stage, percent: int) -> None:
            if stage is Stage.DOWNLOADING:
                on_progress(percent)

        await self._shared_fetch(
            key, url, listener if on_progress else None, cancel_token, timeout
        )
        if on_progress:
            on_progress(100)

    async def get_or_fetch(
        self,
        key: CacheKey,
        url: str,
        on_progress: StageProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Return the cached payload for key, downloading and caching it on a miss.

        Progress is reported as (stage, percent): (CHECKING, 0) then either
        (CHECKING, 100) on a hit, or DOWNLOADING 0..100 followed by
        (CACHING, 0) and (CACHING, 100) on a miss.

        Read failures are treated as misses. An asset larger than the
        capacity under the reject policy is returned without being cached.

        Raises:
            FetchError: The download failed, was cancelled or timed out.
            StorageError: The asset was downloaded but not persisted; the
                bytes are available as the exception's payload.
        """
        with log_context(request_key=key.storage_key, stage=RequestState.CHECKING.value):
            if on_progress:
                on_progress(Stage.CHECKING, 0)

            cached = await self._get_or_miss(key)
            if cached is not None:
                logger.debug("Cache hit", size=len(cached))
                self._transition(RequestState.DONE)
                if on_progress:
                    on_progress(Stage.CHECKING, 100)
                return cached

            logger.debug("Cache miss")
            try:
                return await self._shared_fetch(key, url, on_progress, cancel_token, timeout)
            except CapacityExceededError as e:
                if e.payload is None:
                    raise
                logger.warning("Asset too large to cache, serving uncached", error=str(e))
                return e.payload

    async def _get_or_miss(self, key: CacheKey) -> bytes | None:
        try:
            return await self.get(key)
        except StorageError as e:
            logger.warning("Cache lookup failed, treating as miss", error=str(e))
            return None

    async def _has_or_miss(self, key: CacheKey) -> bool:
        try:
            return await self.has(key)
        except StorageError as e:
            logger.warning(
                "Cache lookup failed, treating as miss", key=key.storage_key, error=str(e)
            )
            return False

    async def _shared_fetch(
        self,
        key: CacheKey,
        url: str,
        listener: StageProgressCallback | None,
        cancel_token: CancellationToken | None,
        timeout: float | None,
    ) -> bytes:
        """Join or start the download for key and wait for its result.

        The download is cancelled once every waiting caller has left.
        """
        entry = self._in_flight.get(key)
        if entry is not None and entry.task is not None and entry.task.done():
            # Finished but _forget has not run yet; its outcome belongs to earlier callers
            entry = None
        if entry is None:
            entry = _InFlight(key=key)
            entry.task = asyncio.create_task(self._fetch_and_store(entry, url, timeout))
            self._in_flight[key] = entry
            entry.task.add_done_callback(functools.partial(self._forget, entry))
        else:
            logger.debug("Joining in-flight download", key=key.storage_key)

        if listener:
            entry.listeners.append(listener)
        entry.waiters += 1
        try:
            return await self._wait(entry, url, cancel_token)
        finally:
            entry.waiters -= 1
            if listener in entry.listeners:
                entry.listeners.remove(listener)
            if entry.waiters == 0 and entry.task is not None and not entry.task.done():
                logger.info("No callers left, cancelling download", key=key.storage_key)
                # Later callers must start a fresh download, not join this one
                if self._in_flight.get(key) is entry:
                    del self._in_flight[key]
                entry.task.cancel()

    async def _wait(
        self,
        entry: _InFlight,
        url: str,
        cancel_token: CancellationToken | None,
    ) -> bytes:
        assert entry.task is not None
        watched: set[asyncio.Future[object]] = {entry.task}
        token_task: asyncio.Task[None] | None = None
        if cancel_token is not None:
            token_task = asyncio.create_task(cancel_token.wait())
            watched.add(token_task)

        try:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if token_task is not None:
                token_task.cancel()

        if entry.task in done:
            if entry.task.cancelled():
                raise FetchCancelledError(
                    "Download cancelled", url=url, context={"reason": "shared download cancelled"}
                )
            return entry.task.result()

        assert cancel_token is not None
        raise FetchCancelledError(
            "Download cancelled", url=url, context={"reason": cancel_token.reason}
        )

    def _forget(self, entry: _InFlight, task: asyncio.Task[bytes]) -> None:
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
        if not task.cancelled():
            # Mark the exception retrieved when no caller is left to read it
            task.exception()

    def _log_detached_write(self, key: CacheKey, task: asyncio.Future[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Cache write after cancelled download failed",
                key=key.storage_key,
                error=str(error),
            )

    async def _fetch_and_store(
        self, entry: _InFlight, url: str, timeout: float | None
    ) -> bytes:
        key = entry.key
        with log_context(request_key=key.storage_key):
            self._transition(RequestState.DOWNLOADING)
            entry.emit(Stage.DOWNLOADING, 0)
            try:
                payload = await self.fetcher.fetch(
                    url,
                    lambda percent: entry.emit(Stage.DOWNLOADING, percent),
                    timeout=timeout,
                )
            except FetchError as e:
                self._transition(RequestState.FAILED, error=str(e))
                raise

            self._transition(RequestState.CACHING)
            entry.emit(Stage.CACHING, 0)
            # A write is never interrupted halfway; close() waits for it
            write = asyncio.ensure_future(self.set(key, payload))
            self._pending_writes.add(write)
            write.add_done_callback(self._pending_writes.discard)
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                write.add_done_callback(functools.partial(self._log_detached_write, key))
                raise
            except (StorageError, CapacityExceededError) as e:
                e.payload = payload
                self._transition(RequestState.FAILED, error=str(e))
                raise
            entry.emit(Stage.CACHING, 100)
            self._transition(RequestState.DONE)
            return payload

    def _transition(self, state: RequestState, **fields: object) -> None:
        set_stage(state.value)
        logger.debug("Request state changed", state=state.value, **fields)
