"""Shared pytest fixtures for blobsync tests.

Provides a temporary Record Store (sync and async), an in-memory blob
source with failure injection, a scripted count-query client, and a
zero-delay retry policy.
"""

from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from blobsync.database import Database
from blobsync.exceptions import QueryError, SourceError, SourceNotFoundError
from blobsync.models import BlobObject
from blobsync.pipeline.coordinator import StatusCoordinator
from blobsync.pipeline.retry import RetryPolicy
from blobsync.store import AsyncRecordStore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeBlobSource:
    """In-memory BlobSource.

    ``transient_failures`` makes the next N reads raise SourceError;
    ``list_error`` makes listing fail.
    """

    def __init__(self) -> None:
        self.objects: dict[str, tuple[BlobObject, bytes]] = {}
        self.transient_failures = 0
        self.list_error: Exception | None = None
        self.open_calls = 0

    def add(
        self,
        name: str,
        content: dict | bytes,
        *,
        created_at: datetime | None = T0,
        modified_at: datetime | None = None,
        metadata: dict[str, str] | None = None,
    ) -> BlobObject:
        raw = content if isinstance(content, bytes) else json.dumps(content).encode()
        obj = BlobObject(
            name=name,
            size=len(raw),
            content_type="application/json",
            etag=f'"{len(raw):x}"',
            created_at=created_at,
            modified_at=modified_at or created_at or T0,
            metadata=metadata or {},
            url=f"memory://{name}",
        )
        self.objects[name] = (obj, raw)
        return obj

    def list(self, prefix: str | None = None):
        if self.list_error is not None:
            raise self.list_error
        for name in sorted(self.objects):
            if prefix is None or name.startswith(prefix):
                yield self.objects[name][0]

    def open(self, name: str):
        self.open_calls += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise SourceError(f"Simulated outage reading {name}")
        if name not in self.objects:
            raise SourceNotFoundError(f"Object does not exist: {name}")
        return io.BytesIO(self.objects[name][1])

    def exists(self, name: str) -> bool:
        return name in self.objects


class FakeQueryClient:
    """QueryClient returning scripted counts per object name.

    ``failures`` makes the next N queries raise QueryError.
    """

    def __init__(self, counts: dict[str, int] | None = None, default: int = 0) -> None:
        self.counts = counts or {}
        self.default = default
        self.failures = 0
        self.queries: list[str] = []

    async def query_count(self, query: str) -> int:
        self.queries.append(query)
        if self.failures > 0:
            self.failures -= 1
            raise QueryError("Simulated query outage")
        for name, count in self.counts.items():
            if f"'{name}'" in query:
                return count
        return self.default

    async def aclose(self) -> None:
        pass


def data_envelope(entries: list[dict] | None) -> dict:
    shape: dict = {"Header": {"SystemName": "IRIS", "StartDate": "2024-01-01", "EndDate": "2024-01-02"}}
    if entries is not None:
        shape["Objects"] = entries
    return {"_name": "export", "_model": "iris", "_timestamp": 1704067200, "ExportedData": shape}


def events_envelope(entries: list[dict] | None) -> dict:
    shape: dict = {"Header": {"SystemName": "IRIS"}}
    if entries is not None:
        shape["Objects"] = entries
    return {"_name": "export", "ExportedEvents": shape}


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "test.db")


@pytest.fixture
def tmp_db(db_path: str) -> Database:
    """Create a temporary SQLite database (file-based for WAL support)."""
    db = Database(db_path)
    yield db
    db.close()


@pytest.fixture
async def store(db_path: str) -> AsyncRecordStore:
    store = AsyncRecordStore(db_path)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def coordinator(store: AsyncRecordStore) -> StatusCoordinator:
    return StatusCoordinator(store)


@pytest.fixture
def blob_source() -> FakeBlobSource:
    return FakeBlobSource()


@pytest.fixture
def query_client() -> FakeQueryClient:
    return FakeQueryClient()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three retries with no backoff delay."""
    return RetryPolicy(max_retries=3, base_delay=0)


@pytest.fixture
def make_data_envelope():
    return data_envelope


@pytest.fixture
def make_events_envelope():
    return events_envelope


@pytest.fixture
def ten_minutes() -> timedelta:
    return timedelta(minutes=10)
