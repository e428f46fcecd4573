"""
Blob storage backends.

- BlobStore: abstract interface
- SQLiteBlobStore: SQLite metadata + blob files (durable)
- MemoryBlobStore: in-process dict
"""

from assetcache.store.base import BlobStore
from assetcache.store.memory import MemoryBlobStore
from assetcache.store.sqlite import SQLiteBlobStore

__all__ = ["BlobStore", "MemoryBlobStore", "SQLiteBlobStore"]
