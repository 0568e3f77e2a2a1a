"""SQLite Record Store for blob change records.

Manages schema initialization, WAL mode pragmas, and the synchronous
reporting and operator queries used by the CLI.  The long-running poll
loops go through :class:`blobsync.store.AsyncRecordStore` instead.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from blobsync.models import (
    INSERT_OR_UPDATE_KINDS,
    ProcessingState,
    ProcessingStatus,
    from_db_timestamp,
)
from blobsync.pipeline.fsm import sources_for

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in ProcessingStatus)

SCHEMA_SQL = f"""
-- One row per (object, change kind, modification time)
CREATE TABLE IF NOT EXISTS change_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    object_name TEXT NOT NULL,
    change_kind TEXT NOT NULL,
    content_type TEXT,
    content_length INTEGER,
    etag TEXT,
    modified_at TEXT NOT NULL,
    metadata_json TEXT,
    source_url TEXT,
    version_id TEXT,

    -- Downstream processing state (NULL until first touched)
    total_records INTEGER,
    distinct_records INTEGER,
    processing_status TEXT
        CHECK(processing_status IS NULL OR processing_status IN ({_STATUS_VALUES})),
    time_series_count INTEGER,

    -- Timestamps (ISO 8601 with microseconds, UTC)
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),

    UNIQUE(object_name, change_kind, modified_at)
);

CREATE INDEX IF NOT EXISTS idx_change_records_object_name ON change_records(object_name);
CREATE INDEX IF NOT EXISTS idx_change_records_modified_at ON change_records(modified_at);
CREATE INDEX IF NOT EXISTS idx_change_records_status ON change_records(processing_status);

-- Auto-update updated_at on any change
CREATE TRIGGER IF NOT EXISTS update_change_records_timestamp
    AFTER UPDATE ON change_records
    FOR EACH ROW
    BEGIN
        UPDATE change_records SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
        WHERE id = NEW.id;
    END;

-- Status transition audit log
CREATE TABLE IF NOT EXISTS _status_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    object_name TEXT NOT NULL,
    change_kind TEXT NOT NULL,
    old_status TEXT,
    new_status TEXT,
    timestamp TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TRIGGER IF NOT EXISTS log_status_change
    AFTER UPDATE OF processing_status ON change_records
    FOR EACH ROW
    WHEN OLD.processing_status IS NOT NEW.processing_status
    BEGIN
        INSERT INTO _status_log(object_name, change_kind, old_status, new_status)
        VALUES (NEW.object_name, NEW.change_kind, OLD.processing_status, NEW.processing_status);
    END;
"""

# Re-ingesting the same triple refreshes descriptive fields only; the
# processing columns are never written here.
UPSERT_SQL = """
INSERT INTO change_records(object_name, change_kind, modified_at, content_type,
                           content_length, etag, metadata_json, source_url, version_id)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(object_name, change_kind, modified_at) DO UPDATE SET
    content_type = excluded.content_type,
    content_length = excluded.content_length,
    etag = excluded.etag,
    metadata_json = excluded.metadata_json,
    source_url = excluded.source_url,
    version_id = excluded.version_id
"""

KIND_PLACEHOLDERS = ", ".join("?" for _ in INSERT_OR_UPDATE_KINDS)
KIND_VALUES = tuple(sorted(k.value for k in INSERT_OR_UPDATE_KINDS))


def connect_sqlite(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection with LEGACY transaction control and Row results."""
    conn = sqlite3.connect(
        str(db_path),
        autocommit=sqlite3.LEGACY_TRANSACTION_CONTROL,
    )
    conn.row_factory = sqlite3.Row
    return conn


class Database:
    """SQLite database wrapper for the change record table.

    Usage:
        with Database("data/blobsync.db") as db:
            counts = db.get_status_counts()
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = connect_sqlite(self.db_path)
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for concurrent readers and one writer at a time."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA busy_timeout=5000")

        result = self.conn.execute("PRAGMA journal_mode").fetchone()[0]
        if result != "wal":
            logger.warning("WAL mode not enabled, got: %s", result)

    def _setup_schema(self) -> None:
        """Create tables, indexes, and triggers if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_record_count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS cnt FROM change_records").fetchone()
        return row["cnt"]

    def get_object_count(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(DISTINCT object_name) AS cnt FROM change_records"
        ).fetchone()
        return row["cnt"]

    def get_status_counts(self) -> dict[str, int]:
        """Return row counts grouped by processing status.

        Untouched rows (NULL status) are reported under ``"NEW"``.
        """
        rows = self.conn.execute(
            """SELECT COALESCE(processing_status, 'NEW') AS status, COUNT(*) AS cnt
               FROM change_records
               GROUP BY COALESCE(processing_status, 'NEW')"""
        ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    def get_last_modified(self) -> datetime | None:
        """Return the latest stored modification time, or None for an empty store."""
        row = self.conn.execute(
            "SELECT MAX(modified_at) AS last_modified FROM change_records"
        ).fetchone()
        if row["last_modified"] is None:
            return None
        return from_db_timestamp(row["last_modified"])

    def get_processing_state(self, object_name: str) -> ProcessingState | None:
        """Return the processing fields of the object's most recent change record."""
        row = self.conn.execute(
            """SELECT total_records, distinct_records, processing_status, time_series_count
               FROM change_records
               WHERE object_name = ?
               ORDER BY modified_at DESC
               LIMIT 1""",
            (object_name,),
        ).fetchone()
        if row is None:
            return None
        status = row["processing_status"]
        return ProcessingState(
            total_records=row["total_records"],
            distinct_records=row["distinct_records"],
            processing_status=ProcessingStatus(status) if status else None,
            time_series_count=row["time_series_count"],
        )

    def get_status_history(self, object_name: str) -> list[tuple[str | None, str | None]]:
        """Return (old_status, new_status) transitions for an object in order."""
        rows = self.conn.execute(
            """SELECT old_status, new_status FROM _status_log
               WHERE object_name = ?
               ORDER BY log_id""",
            (object_name,),
        ).fetchall()
        return [(row["old_status"], row["new_status"]) for row in rows]

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def reset_failed(self) -> int:
        """Return FAILED objects to the untouched state so they are reclaimed.

        This is the explicit retry trigger for classification failures.

        Returns:
            Number of rows reset.
        """
        sources = [s for s in sources_for("retry") if s is not None]
        placeholders = ", ".join("?" * len(sources))
        with self.conn:
            cursor = self.conn.execute(
                f"""UPDATE change_records
                    SET processing_status = NULL,
                        total_records = NULL,
                        distinct_records = NULL
                    WHERE processing_status IN ({placeholders})
                      AND change_kind IN ({KIND_PLACEHOLDERS})""",
                (*sources, *KIND_VALUES),
            )
        logger.info("Reset %d FAILED rows for reprocessing", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
