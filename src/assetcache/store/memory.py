"""In-process blob store."""

from __future__ import annotations

from assetcache.exceptions import StorageUnavailableError
from assetcache.store.base import BlobStore
from assetcache.types import CacheKey, CacheRecord, RecordMeta


class MemoryBlobStore(BlobStore):
    """Dict-backed blob store.

    Same semantics as SQLiteBlobStore without durability: contents are
    lost on close().
    """

    def __init__(self) -> None:
        self._records: dict[CacheKey, CacheRecord] | None = None

    @property
    def is_open(self) -> bool:
        return self._records is not None

    async def open(self) -> None:
        if self._records is None:
            self._records = {}

    async def close(self) -> None:
        self._records = None

    def _data(self) -> dict[CacheKey, CacheRecord]:
        if self._records is None:
            raise StorageUnavailableError("Memory store is not open. Call open() first.")
        return self._records

    async def get(self, key: CacheKey) -> CacheRecord | None:
        return self._data().get(key)

    async def get_meta(self, key: CacheKey) -> RecordMeta | None:
        record = self._data().get(key)
        return record.meta if record else None

    async def put(self, record: CacheRecord) -> None:
        self._data()[record.key] = record

    async def delete(self, key: CacheKey) -> bool:
        return self._data().pop(key, None) is not None

    async def list(self) -> list[RecordMeta]:
        metas = [record.meta for record in self._data().values()]
        metas.sort(key=lambda m: (m.stored_at, m.key.storage_key))
        return metas

    async def clear(self) -> int:
        data = self._data()
        count = len(data)
        data.clear()
        return count

    def __repr__(self) -> str:
        count = len(self._records) if self._records is not None else 0
        return f"MemoryBlobStore(records={count})"
