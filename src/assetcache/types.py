"""
Core types for the asset cache.

This module defines the data structures shared by every layer:
- CacheKey: namespace + version identity of a cached asset
- CacheRecord / RecordMeta: stored payloads and their payload-free metadata
- Stage / RequestState: progress stages and per-request lifecycle
- CacheStats / RecordStats / KeyStatus: statistics snapshots
- Helpers for timestamps and blob IDs
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from uuid6 import uuid7

DEFAULT_VERSION = "latest"

# 7 days
DEFAULT_TTL = timedelta(days=7)

# 500 MiB
DEFAULT_CAPACITY_BYTES = 500 * 1024 * 1024

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "blob")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=value)


Clock = Callable[[], datetime]


class Stage(str, Enum):
    """Progress stages reported by get-or-fetch."""

    CHECKING = "checking"
    DOWNLOADING = "downloading"
    CACHING = "caching"


class RequestState(str, Enum):
    """Lifecycle of a single get-or-fetch request."""

    CHECKING = "checking"
    DOWNLOADING = "downloading"
    CACHING = "caching"
    DONE = "done"
    FAILED = "failed"


class OversizedPolicy(str, Enum):
    """What to do with an item larger than the whole cache."""

    REJECT = "reject"
    STORE = "store"


@dataclass(frozen=True, order=True)
class CacheKey:
    """Identity of a cached asset.

    Attributes:
        namespace: Logical asset family (e.g. an emulator system name).
        version: Asset version, "latest" when not given.
    """

    namespace: str
    version: str = DEFAULT_VERSION

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("CacheKey namespace must not be empty")
        if not self.version:
            object.__setattr__(self, "version", DEFAULT_VERSION)
        if "-" in self.version:
            # storage_key joins with "-" and parse() splits on the last one
            raise ValueError(f"CacheKey version must not contain '-': {self.version!r}")

    @property
    def storage_key(self) -> str:
        """Key used in the persistent store."""
        return f"{self.namespace}-{self.version}"

    @classmethod
    def parse(cls, storage_key: str) -> CacheKey:
        """Rebuild a key from its storage form, splitting on the last dash."""
        namespace, sep, version = storage_key.rpartition("-")
        if not sep or not namespace:
            return cls(namespace=storage_key)
        return cls(namespace=namespace, version=version)

    def __str__(self) -> str:
        return self.storage_key


@dataclass(frozen=True)
class RecordMeta:
    """Metadata of a stored record, without its payload."""

    key: CacheKey
    size_bytes: int
    stored_at: datetime

    def age(self, now: datetime) -> timedelta:
        """Time elapsed since the record was stored."""
        return now - self.stored_at

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        """True once the record has lived for ttl or longer."""
        return self.age(now) >= ttl


@dataclass(frozen=True)
class CacheRecord:
    """A stored payload with its metadata.

    size_bytes always equals len(payload).
    """

    key: CacheKey
    payload: bytes
    stored_at: datetime
    size_bytes: int = -1

    def __post_init__(self) -> None:
        actual = len(self.payload)
        if self.size_bytes == -1:
            object.__setattr__(self, "size_bytes", actual)
        elif self.size_bytes != actual:
            raise ValueError(
                f"size_bytes {self.size_bytes} does not match payload length {actual}"
            )

    @classmethod
    def create(cls, key: CacheKey, payload: bytes, stored_at: datetime | None = None) -> CacheRecord:
        """Create a record stamped with the current time."""
        return cls(key=key, payload=bytes(payload), stored_at=stored_at or utc_now())

    @property
    def meta(self) -> RecordMeta:
        """Payload-free view of this record."""
        return RecordMeta(key=self.key, size_bytes=self.size_bytes, stored_at=self.stored_at)

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        """True once the record has lived for ttl or longer."""
        return now - self.stored_at >= ttl


@dataclass(frozen=True)
class RecordStats:
    """Per-record entry of a statistics snapshot."""

    key: CacheKey
    size_bytes: int
    age_ms: int
    expired: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.storage_key,
            "namespace": self.key.namespace,
            "version": self.key.version,
            "size_bytes": self.size_bytes,
            "age_ms": self.age_ms,
            "expired": self.expired,
        }


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of the cache contents."""

    total_size_bytes: int = 0
    record_count: int = 0
    records: tuple[RecordStats, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_size_bytes": self.total_size_bytes,
            "record_count": self.record_count,
            "records": [r.to_dict() for r in self.records],
        }


@dataclass(frozen=True)
class KeyStatus:
    """Whether a key is cached and, if so, how old it is."""

    cached: bool
    age_ms: int | None = None
