"""
SQLite-backed blob store.

Metadata lives in SQLite at {cache_dir}/assets.db and payloads live as files
under {cache_dir}/blobs/{shard}/{blob_id}. Every put writes a brand new blob
file, so the previous record stays readable until the metadata row has been
switched over in a committed transaction.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import aiosqlite

from assetcache.exceptions import StorageUnavailableError, StorageWriteError
from assetcache.logging import get_logger
from assetcache.store.base import BlobStore
from assetcache.types import (
    CacheKey,
    CacheRecord,
    RecordMeta,
    from_epoch_ms,
    generate_id,
    to_epoch_ms,
)

logger = get_logger(__name__)

DB_FILENAME = "assets.db"
BLOBS_DIRNAME = "blobs"


class SQLiteBlobStore(BlobStore):
    """Durable blob store backed by aiosqlite and plain files.

    The records table is indexed on stored_at_ms so that oldest-first
    listing for eviction does not need a full scan plus sort.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        """Initialize the store.

        Args:
            cache_dir: Base directory for the database and blob files.
        """
        self.cache_dir = Path(cache_dir)
        self.blobs_dir = self.cache_dir / BLOBS_DIRNAME
        self.db_path = self.cache_dir / DB_FILENAME
        self._db: aiosqlite.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        """Create directories and the database schema."""
        if self._db is not None:
            return

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.blobs_dir.mkdir(parents=True, exist_ok=True)

            db = await aiosqlite.connect(self.db_path)
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(
                "Cannot open asset store",
                context={"cache_dir": str(self.cache_dir), "error": str(e)},
            ) from e

        try:
            db.row_factory = aiosqlite.Row
            await db.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    storage_key TEXT PRIMARY KEY,
                    namespace TEXT NOT NULL,
                    version TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    stored_at_ms INTEGER NOT NULL,
                    blob_path TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_stored_at ON records(stored_at_ms)"
            )
            await db.commit()

            async with db.execute("SELECT blob_path FROM records") as cursor:
                referenced = {row["blob_path"] for row in await cursor.fetchall()}
        except sqlite3.Error as e:
            await db.close()
            raise StorageUnavailableError(
                "Cannot initialize asset store schema",
                context={"cache_dir": str(self.cache_dir), "error": str(e)},
            ) from e

        self._db = db
        removed = await asyncio.to_thread(self._remove_unreferenced, referenced)
        logger.info("Asset store opened", cache_dir=str(self.cache_dir), orphans_removed=removed)

    def _remove_unreferenced(self, referenced: set[str]) -> int:
        """Delete blob files no row points to (interrupted writes, stale temp files)."""
        removed = 0
        for path in self.blobs_dir.rglob("*"):
            if not path.is_file():
                continue
            if str(path.relative_to(self.cache_dir)) in referenced:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Failed to remove orphaned blob", path=str(path), error=str(e))
        return removed

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageUnavailableError(
                "Asset store is not open. Call open() first.",
                context={"cache_dir": str(self.cache_dir)},
            )
        return self._db

    def _new_blob_path(self) -> Path:
        """Allocate a path for a new blob file.

        The last 2 chars of the time-ordered ID pick the shard directory.
        """
        blob_id = generate_id("blob")
        return self.blobs_dir / blob_id[-2:] / blob_id

    def _absolute(self, blob_path: str) -> Path:
        return self.cache_dir / blob_path

    async def get(self, key: CacheKey) -> CacheRecord | None:
        db = self._conn()
        try:
            async with db.execute(
                "SELECT * FROM records WHERE storage_key = ?", (key.storage_key,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                "Failed to read record",
                context={"key": key.storage_key, "error": str(e)},
            ) from e

        if not row:
            return None

        path = self._absolute(row["blob_path"])
        try:
            payload = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            logger.warning("Blob file missing, dropping record", key=key.storage_key)
            await self._drop_row(key, row["blob_path"])
            return None
        except OSError as e:
            raise StorageUnavailableError(
                "Failed to read blob file",
                context={"key": key.storage_key, "error": str(e)},
            ) from e

        if len(payload) != row["size_bytes"]:
            logger.warning(
                "Blob size mismatch, dropping record",
                key=key.storage_key,
                expected=row["size_bytes"],
                actual=len(payload),
            )
            await self._drop_row(key, row["blob_path"])
            return None

        return CacheRecord(
            key=key,
            payload=payload,
            size_bytes=row["size_bytes"],
            stored_at=from_epoch_ms(row["stored_at_ms"]),
        )

    async def get_meta(self, key: CacheKey) -> RecordMeta | None:
        db = self._conn()
        try:
            async with db.execute(
                """
                SELECT namespace, version, size_bytes, stored_at_ms, blob_path FROM records
                WHERE storage_key = ?
                """,
                (key.storage_key,),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                "Failed to read record metadata",
                context={"key": key.storage_key, "error": str(e)},
            ) from e

        if not row:
            return None

        # stat only; the payload is not read
        path = self._absolute(row["blob_path"])
        try:
            intact = path.stat().st_size == row["size_bytes"]
        except FileNotFoundError:
            intact = False
        except OSError as e:
            raise StorageUnavailableError(
                "Failed to inspect blob file",
                context={"key": key.storage_key, "error": str(e)},
            ) from e

        if not intact:
            logger.warning("Blob file missing or wrong size, dropping record", key=key.storage_key)
            await self._drop_row(key, row["blob_path"])
            return None

        return self._row_to_meta(row)

    async def _drop_row(self, key: CacheKey, blob_path: str) -> None:
        """Remove a row whose blob is gone or corrupt."""
        db = self._conn()
        try:
            await db.execute(
                "DELETE FROM records WHERE storage_key = ? AND blob_path = ?",
                (key.storage_key, blob_path),
            )
            await db.commit()
        except sqlite3.Error as e:
            logger.warning("Failed to drop corrupt record", key=key.storage_key, error=str(e))
        self._absolute(blob_path).unlink(missing_ok=True)

    async def put(self, record: CacheRecord) -> None:
        db = self._conn()
        key = record.key
        blob_path = self._new_blob_path()
        temp_path = blob_path.with_suffix(".tmp")
        relative = str(blob_path.relative_to(self.cache_dir))

        try:
            blob_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(temp_path.write_bytes, record.payload)
            temp_path.rename(blob_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageWriteError(
                "Failed to write blob file",
                context={"key": key.storage_key, "error": str(e)},
            ) from e
        except BaseException:
            temp_path.unlink(missing_ok=True)
            blob_path.unlink(missing_ok=True)
            raise

        upsert_sent = False
        try:
            async with db.execute(
                "SELECT blob_path FROM records WHERE storage_key = ?", (key.storage_key,)
            ) as cursor:
                previous = await cursor.fetchone()

            upsert_sent = True
            await db.execute(
                """
                INSERT INTO records (
                    storage_key, namespace, version, size_bytes, stored_at_ms, blob_path
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(storage_key) DO UPDATE SET
                    namespace = excluded.namespace,
                    version = excluded.version,
                    size_bytes = excluded.size_bytes,
                    stored_at_ms = excluded.stored_at_ms,
                    blob_path = excluded.blob_path
                """,
                (
                    key.storage_key,
                    key.namespace,
                    key.version,
                    record.size_bytes,
                    to_epoch_ms(record.stored_at),
                    relative,
                ),
            )
            await db.commit()
        except sqlite3.Error as e:
            await db.rollback()
            blob_path.unlink(missing_ok=True)
            raise StorageWriteError(
                "Failed to write record metadata",
                context={"key": key.storage_key, "error": str(e)},
            ) from e
        except BaseException:
            # Once the upsert is sent the row may already point at the new blob;
            # whichever file ends up unreferenced is removed by the next open()
            if not upsert_sent:
                blob_path.unlink(missing_ok=True)
            raise

        if previous and previous["blob_path"] != relative:
            self._absolute(previous["blob_path"]).unlink(missing_ok=True)

        logger.debug("Stored record", key=key.storage_key, size=record.size_bytes)

    async def delete(self, key: CacheKey) -> bool:
        db = self._conn()
        try:
            async with db.execute(
                "SELECT blob_path FROM records WHERE storage_key = ?", (key.storage_key,)
            ) as cursor:
                row = await cursor.fetchone()
            if not row:
                return False

            await db.execute("DELETE FROM records WHERE storage_key = ?", (key.storage_key,))
            await db.commit()
        except sqlite3.Error as e:
            await db.rollback()
            raise StorageWriteError(
                "Failed to delete record",
                context={"key": key.storage_key, "error": str(e)},
            ) from e

        # Row is gone, a leftover file is unreachable
        try:
            self._absolute(row["blob_path"]).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove blob file", key=key.storage_key, error=str(e))

        logger.debug("Deleted record", key=key.storage_key)
        return True

    async def list(self) -> list[RecordMeta]:
        db = self._conn()
        try:
            async with db.execute(
                """
                SELECT namespace, version, size_bytes, stored_at_ms FROM records
                ORDER BY stored_at_ms ASC, storage_key ASC
                """
            ) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                "Failed to list records", context={"error": str(e)}
            ) from e

        return [self._row_to_meta(row) for row in rows]

    async def total_size(self) -> int:
        db = self._conn()
        try:
            async with db.execute("SELECT COALESCE(SUM(size_bytes), 0) FROM records") as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                "Failed to compute store size", context={"error": str(e)}
            ) from e
        return row[0] if row else 0

    async def clear(self) -> int:
        db = self._conn()
        try:
            async with db.execute("SELECT blob_path FROM records") as cursor:
                rows = await cursor.fetchall()
            await db.execute("DELETE FROM records")
            await db.commit()
        except sqlite3.Error as e:
            await db.rollback()
            raise StorageWriteError("Failed to clear store", context={"error": str(e)}) from e

        for row in rows:
            self._absolute(row["blob_path"]).unlink(missing_ok=True)

        logger.info("Cleared asset store", removed=len(rows))
        return len(rows)

    def _row_to_meta(self, row: aiosqlite.Row) -> RecordMeta:
        """Convert a database row to RecordMeta."""
        return RecordMeta(
            key=CacheKey(namespace=row["namespace"], version=row["version"]),
            size_bytes=row["size_bytes"],
            stored_at=from_epoch_ms(row["stored_at_ms"]),
        )

    def __repr__(self) -> str:
        return f"SQLiteBlobStore(cache_dir={self.cache_dir})"
