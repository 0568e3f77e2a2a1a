"""Async SQLite access to the change record table.

Wraps aiosqlite for the poll loops.  Each write commits immediately;
no transaction is held across an ``await`` boundary, so several loops
(each with its own connection) can share one database file.
"""

from __future__ import annotations

import logging
from datetime import datetime

import aiosqlite

from blobsync.database import UPSERT_SQL, Database
from blobsync.models import ChangeRecord, from_db_timestamp

logger = logging.getLogger(__name__)


class AsyncRecordStore:
    """Async connection to the Record Store.

    Usage::

        async with AsyncRecordStore("data/blobsync.db") as store:
            await store.upsert_record(record)
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Ensure the schema exists, then open an aiosqlite connection in WAL mode."""
        Database(self.db_path).close()
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA busy_timeout=5000")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> AsyncRecordStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    # ------------------------------------------------------------------
    # Change records
    # ------------------------------------------------------------------

    async def upsert_record(self, record: ChangeRecord) -> None:
        """Insert or refresh one change record in its own transaction."""
        db = self.ensure_connected()
        object_name, change_kind, modified_at = record.key
        try:
            await db.execute(
                UPSERT_SQL,
                (
                    object_name,
                    change_kind,
                    modified_at,
                    record.content_type,
                    record.content_length,
                    record.etag,
                    record.metadata_json,
                    record.source_url,
                    record.version_id,
                ),
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    async def get_last_modified(self) -> datetime | None:
        """Return the latest stored modification time, or None when empty."""
        db = self.ensure_connected()
        cursor = await db.execute("SELECT MAX(modified_at) AS last_modified FROM change_records")
        row = await cursor.fetchone()
        if row is None or row["last_modified"] is None:
            return None
        return from_db_timestamp(row["last_modified"])
