"""Tests for the Record Store schema, upsert semantics and reporting queries."""

from __future__ import annotations

import sqlite3

import pytest

from blobsync.database import UPSERT_SQL, Database
from blobsync.models import ProcessingStatus

MODIFIED = "2024-01-01T12:00:00.000000"


def _insert(
    db: Database,
    name: str,
    kind: str = "Created",
    modified: str = MODIFIED,
    etag: str | None = '"v1"',
) -> None:
    with db.conn:
        db.conn.execute(
            UPSERT_SQL,
            (name, kind, modified, "application/json", 10, etag, None, None, None),
        )


def _set_status(db: Database, name: str, status: str | None, **fields: int) -> None:
    assignments = "".join(f", {k} = {v}" for k, v in fields.items())
    with db.conn:
        db.conn.execute(
            f"UPDATE change_records SET processing_status = ?{assignments} WHERE object_name = ?",
            (status, name),
        )


class TestSchema:
    def test_tables_created(self, tmp_db: Database):
        tables = {
            row["name"]
            for row in tmp_db.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"change_records", "_status_log"} <= tables

    def test_supporting_indexes(self, tmp_db: Database):
        indexes = {
            row["name"]
            for row in tmp_db.conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        assert "idx_change_records_object_name" in indexes
        assert "idx_change_records_modified_at" in indexes

    def test_wal_mode(self, tmp_db: Database):
        mode = tmp_db.conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_reopen_is_idempotent(self, db_path: str):
        Database(db_path).close()
        with Database(db_path) as db:
            assert db.get_record_count() == 0

    def test_unknown_status_rejected(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        with pytest.raises(sqlite3.IntegrityError):
            _set_status(tmp_db, "a.json", "DONE")


class TestUpsert:
    def test_same_triple_yields_one_row_with_latest_fields(self, tmp_db: Database):
        _insert(tmp_db, "a.json", etag='"v1"')
        _insert(tmp_db, "a.json", etag='"v2"')

        rows = tmp_db.conn.execute("SELECT etag FROM change_records").fetchall()
        assert len(rows) == 1
        assert rows[0]["etag"] == '"v2"'

    def test_different_modification_time_is_a_new_row(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        _insert(tmp_db, "a.json", modified="2024-01-01T13:00:00.000000")
        assert tmp_db.get_record_count() == 2
        assert tmp_db.get_object_count() == 1

    def test_reupsert_keeps_processing_fields(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        _set_status(tmp_db, "a.json", "COMPLETED", total_records=3, distinct_records=2)

        _insert(tmp_db, "a.json", etag='"v2"')

        state = tmp_db.get_processing_state("a.json")
        assert state.processing_status == ProcessingStatus.COMPLETED
        assert (state.total_records, state.distinct_records) == (3, 2)


class TestReporting:
    def test_status_counts_report_untouched_as_new(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        _insert(tmp_db, "b.json")
        _set_status(tmp_db, "b.json", "FAILED")

        assert tmp_db.get_status_counts() == {"NEW": 1, "FAILED": 1}

    def test_last_modified_empty_store(self, tmp_db: Database):
        assert tmp_db.get_last_modified() is None

    def test_last_modified(self, tmp_db: Database):
        _insert(tmp_db, "a.json", modified="2024-01-01T12:00:00.000000")
        _insert(tmp_db, "b.json", modified="2024-01-02T08:30:00.000000")

        latest = tmp_db.get_last_modified()
        assert latest.isoformat() == "2024-01-02T08:30:00+00:00"

    def test_processing_state_missing_object(self, tmp_db: Database):
        assert tmp_db.get_processing_state("missing.json") is None

    def test_status_log_records_transitions(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        _set_status(tmp_db, "a.json", "PROCESSING")
        _set_status(tmp_db, "a.json", "COMPLETED")

        assert tmp_db.get_status_history("a.json") == [
            (None, "PROCESSING"),
            ("PROCESSING", "COMPLETED"),
        ]


class TestResetFailed:
    def test_failed_rows_return_to_untouched(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        _insert(tmp_db, "b.json")
        _set_status(tmp_db, "a.json", "FAILED")
        _set_status(tmp_db, "b.json", "COMPLETED", total_records=1, distinct_records=1)

        assert tmp_db.reset_failed() == 1

        assert tmp_db.get_processing_state("a.json").processing_status is None
        assert tmp_db.get_processing_state("b.json").processing_status == ProcessingStatus.COMPLETED

    def test_nothing_to_reset(self, tmp_db: Database):
        _insert(tmp_db, "a.json")
        assert tmp_db.reset_failed() == 0
