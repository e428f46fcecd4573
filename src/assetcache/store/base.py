"""
Abstract blob store interface.

A BlobStore persists CacheRecords by key. It knows nothing about TTL or
capacity: expired records are returned as-is and callers decide what to do.

Implementations:
- SQLiteBlobStore: SQLite metadata + blob files, survives restarts
- MemoryBlobStore: in-process dict, for ephemeral caches and tests
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from assetcache.types import CacheKey, CacheRecord, RecordMeta


class BlobStore(ABC):
    """Abstract key -> record storage for binary payloads.

    Misses are reported as None. Failures raise StorageUnavailableError
    (store not open / cannot open) or StorageWriteError (failed write).
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether open() has completed and close() has not been called."""
        ...

    @abstractmethod
    async def open(self) -> None:
        """Open the store. Safe to call more than once."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the store."""
        ...

    @abstractmethod
    async def get(self, key: CacheKey) -> CacheRecord | None:
        """Get a record, ignoring expiry."""
        ...

    @abstractmethod
    async def get_meta(self, key: CacheKey) -> RecordMeta | None:
        """Get a record's metadata without reading its payload."""
        ...

    @abstractmethod
    async def put(self, record: CacheRecord) -> None:
        """Insert or replace a record. All-or-nothing."""
        ...

    @abstractmethod
    async def delete(self, key: CacheKey) -> bool:
        """Delete a record. Returns False if it was absent."""
        ...

    @abstractmethod
    async def list(self) -> list[RecordMeta]:
        """List record metadata oldest-first, without loading payloads."""
        ...

    @abstractmethod
    async def clear(self) -> int:
        """Delete all records. Returns the number removed."""
        ...

    async def total_size(self) -> int:
        """Sum of size_bytes over all stored records."""
        return sum(meta.size_bytes for meta in await self.list())

    async def __aenter__(self) -> BlobStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
