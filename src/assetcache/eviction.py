"""
Capacity-driven eviction.

Eviction policies decide which records to remove so that a new record of a
given size fits under the cache capacity. They work on record metadata only
and delete victims one at a time through the BlobStore.

Implementations:
- OldestFirstEviction: oldest stored_at first, ties broken by storage key
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field

from assetcache.logging import get_logger
from assetcache.store.base import BlobStore
from assetcache.types import CacheKey, RecordMeta

logger = get_logger(__name__)


@dataclass
class EvictionResult:
    """Outcome of an eviction pass.

    Attributes:
        evicted: Keys removed, in removal order.
        freed_bytes: Total size of the removed records.
        remaining_bytes: Size left in the store after the pass.
    """

    evicted: list[CacheKey] = field(default_factory=list)
    freed_bytes: int = 0
    remaining_bytes: int = 0

    @property
    def count(self) -> int:
        return len(self.evicted)


def fits(current_total: int, incoming_size: int, capacity: int) -> bool:
    """Whether incoming_size can be added without exceeding capacity."""
    return current_total + incoming_size <= capacity


class EvictionPolicy(ABC):
    """Abstract base for eviction policies.

    Subclasses only order the candidates; plan() picks the victims and
    evict() deletes exactly those from a store.
    """

    @abstractmethod
    def order(self, records: Iterable[RecordMeta]) -> list[RecordMeta]:
        """Return records in the order they should be evicted."""
        ...

    def plan(
        self,
        records: Iterable[RecordMeta],
        current_total: int,
        incoming_size: int,
        capacity: int,
    ) -> list[RecordMeta]:
        """Choose the records to remove so incoming_size fits.

        Args:
            records: Candidate records.
            current_total: Bytes currently held by the store.
            incoming_size: Size of the record about to be inserted.
            capacity: Capacity bound in bytes.

        Returns:
            Victims in removal order. May be every record when incoming_size
            alone exceeds capacity.
        """
        victims: list[RecordMeta] = []
        freed = 0
        for meta in self.order(records):
            if fits(current_total - freed, incoming_size, capacity):
                break
            victims.append(meta)
            freed += meta.size_bytes
        return victims

    async def evict(
        self,
        store: BlobStore,
        incoming_size: int,
        capacity: int,
        exclude: Collection[CacheKey] = (),
    ) -> EvictionResult:
        """Remove records from store until incoming_size fits or it is empty.

        Args:
            store: Store to evict from.
            incoming_size: Size of the record about to be inserted.
            capacity: Capacity bound in bytes.
            exclude: Keys never evicted (e.g. the key being replaced); their
                size is not counted towards the current total.

        Returns:
            EvictionResult describing what was removed.

        Raises:
            StorageWriteError: If a deletion fails. Records removed before the
                failure stay removed.
        """
        records = [m for m in await store.list() if m.key not in exclude]
        total = sum(m.size_bytes for m in records)
        result = EvictionResult(remaining_bytes=total)

        for meta in self.plan(records, total, incoming_size, capacity):
            removed = await store.delete(meta.key)
            if not removed:
                logger.debug("Eviction victim already gone", key=meta.key.storage_key)
            result.evicted.append(meta.key)
            result.freed_bytes += meta.size_bytes
            result.remaining_bytes = total - result.freed_bytes
            logger.debug(
                "Evicted record",
                key=meta.key.storage_key,
                size=meta.size_bytes,
                freed=result.freed_bytes,
            )

        if result.evicted:
            logger.info(
                "Eviction pass complete",
                evicted=result.count,
                freed_bytes=result.freed_bytes,
                remaining_bytes=result.remaining_bytes,
                incoming=incoming_size,
            )
        return result


class OldestFirstEviction(EvictionPolicy):
    """Evict by insertion time, oldest first.

    This is LRU by insertion time, not by last access: reads never refresh
    a record. Equal timestamps are ordered by storage key so passes are
    reproducible.
    """

    def order(self, records: Iterable[RecordMeta]) -> list[RecordMeta]:
        return sorted(records, key=lambda m: (m.stored_at, m.key.storage_key))
