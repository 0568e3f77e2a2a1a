"""CLI smoke tests using typer's CliRunner."""

from __future__ import annotations

import json
from pathlib import Path

import keyring
import pytest
from typer.testing import CliRunner

from blobsync.cli import app
from blobsync.database import UPSERT_SQL, Database

runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_keyring(monkeypatch):
    store: dict[tuple[str, str], str] = {}
    monkeypatch.setattr(keyring, "get_password", lambda s, k: store.get((s, k)))
    monkeypatch.setattr(keyring, "set_password", lambda s, k, v: store.__setitem__((s, k), v))
    monkeypatch.setattr(keyring, "delete_password", lambda s, k: store.pop((s, k)))
    monkeypatch.delenv("BLOBSYNC_QUERY_TOKEN", raising=False)
    monkeypatch.delenv("BLOBSYNC_DB_PATH", raising=False)
    monkeypatch.delenv("BLOBSYNC_SOURCE_ROOT", raising=False)
    return store


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    archive = tmp_path / "archive"
    archive.mkdir()
    (archive / "IRIS_Data_1.json").write_text(
        json.dumps({"ExportedData": {"Objects": [{"Id": 1, "Fullname": "a", "Time": "t"}]}})
    )
    path = tmp_path / "blobsync.json"
    path.write_text(
        json.dumps(
            {
                "source": {"root": str(archive)},
                "database": {"path": str(tmp_path / "blobsync.db")},
            }
        )
    )
    return path


def test_init_creates_database(config_file: Path, tmp_path: Path):
    result = runner.invoke(app, ["--config", str(config_file), "init"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "blobsync.db").exists()


def test_status_without_database(config_file: Path):
    result = runner.invoke(app, ["--config", str(config_file), "status"])
    assert result.exit_code == 1
    assert "Database not found" in result.output


def test_ingest_once_then_status(config_file: Path):
    result = runner.invoke(app, ["--config", str(config_file), "ingest", "--once"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["--config", str(config_file), "status"])
    assert result.exit_code == 0, result.output
    assert "NEW" in result.output
    assert "Total change records: 1" in result.output


def test_missing_configuration_exits_nonzero(tmp_path: Path):
    path = tmp_path / "blobsync.json"
    path.write_text(json.dumps({"database": {"path": str(tmp_path / "x.db")}}))

    result = runner.invoke(app, ["--config", str(path), "verify", "--once"])

    assert result.exit_code == 1
    assert "Configuration error" in result.output
    assert "query.host is required" in result.output


def test_run_rejects_unknown_stage(config_file: Path):
    result = runner.invoke(app, ["--config", str(config_file), "run", "--stage", "publish"])
    assert result.exit_code == 1
    assert "Unknown stage" in result.output


def test_retry_failed(config_file: Path, tmp_path: Path):
    with Database(tmp_path / "blobsync.db") as db:
        with db.conn:
            db.conn.execute(
                UPSERT_SQL,
                ("a.json", "Created", "2024-01-01T00:00:00.000000", None, None, None, None, None, None),
            )
            db.conn.execute("UPDATE change_records SET processing_status = 'FAILED'")

    result = runner.invoke(app, ["--config", str(config_file), "retry-failed"])

    assert result.exit_code == 0, result.output
    assert "Reset 1 FAILED" in result.output


def test_token_commands(fake_keyring):
    result = runner.invoke(app, ["config", "set-token", "abcd1234"])
    assert result.exit_code == 0, result.output
    assert fake_keyring[("blobsync-query", "token")] == "abcd1234"

    result = runner.invoke(app, ["config", "get-token"])
    assert result.exit_code == 0
    assert "abcd****" in result.output

    result = runner.invoke(app, ["config", "remove-token"])
    assert result.exit_code == 0
    assert ("blobsync-query", "token") not in fake_keyring

    result = runner.invoke(app, ["config", "get-token"])
    assert result.exit_code == 1
