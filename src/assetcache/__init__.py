"""
assetcache - offline cache for large binary assets.

A persistent, size-bounded, time-bounded local store for blobs downloaded
over HTTP, reused across sessions to avoid re-downloading multi-megabyte
assets.

Example:
    from assetcache import CacheKey, CacheService, SQLiteBlobStore

    async with CacheService(SQLiteBlobStore(".asset_cache")) as cache:
        core = await cache.get_or_fetch(CacheKey("snes", "1.4"), url)
"""

__version__ = "0.3.0"

from assetcache.exceptions import (
    AssetCacheError,
    CapacityExceededError,
    ConfigurationError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    StorageError,
    StorageUnavailableError,
    StorageWriteError,
)
from assetcache.eviction import EvictionPolicy, EvictionResult, OldestFirstEviction
from assetcache.fetcher import CancellationToken, StreamingFetcher
from assetcache.service import CacheService
from assetcache.store import BlobStore, MemoryBlobStore, SQLiteBlobStore
from assetcache.types import (
    CacheKey,
    CacheRecord,
    CacheStats,
    KeyStatus,
    OversizedPolicy,
    RecordMeta,
    RecordStats,
    RequestState,
    Stage,
)

__all__ = [
    "__version__",
    # Service
    "CacheService",
    # Types
    "CacheKey",
    "CacheRecord",
    "CacheStats",
    "KeyStatus",
    "OversizedPolicy",
    "RecordMeta",
    "RecordStats",
    "RequestState",
    "Stage",
    # Storage
    "BlobStore",
    "MemoryBlobStore",
    "SQLiteBlobStore",
    # Eviction
    "EvictionPolicy",
    "EvictionResult",
    "OldestFirstEviction",
    # Fetching
    "CancellationToken",
    "StreamingFetcher",
    # Errors
    "AssetCacheError",
    "CapacityExceededError",
    "ConfigurationError",
    "FetchCancelledError",
    "FetchError",
    "FetchTimeoutError",
    "StorageError",
    "StorageUnavailableError",
    "StorageWriteError",
]
