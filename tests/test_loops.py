"""Tests for the poll loops, including the end-to-end ingest/process/verify scenario."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from blobsync.classify.classifier import ContentClassifier
from blobsync.database import Database
from blobsync.exceptions import SourceError
from blobsync.ingest.scanner import ChangeScanner
from blobsync.models import ProcessingStatus
from blobsync.pipeline.coordinator import StatusCoordinator
from blobsync.pipeline.loops import IngestionLoop, PollLoop, ProcessingLoop, VerificationLoop
from blobsync.pipeline.retry import RetryPolicy
from blobsync.verify.verifier import ReconciliationVerifier

TEMPLATE = "SELECT count(*) FROM iris_data WHERE file_name = '{object_name}'"
MIN_AGE = timedelta(minutes=10)


class _Clock:
    def __init__(self, now) -> None:
        self.now = now

    def __call__(self):
        return self.now


def _state(db_path: str, name: str):
    with Database(db_path) as db:
        return db.get_processing_state(name)


async def test_end_to_end(store, db_path, blob_source, query_client, fast_retry, make_data_envelope, t0):
    entries = [
        {"Id": 1, "Fullname": "a", "Time": "t1"},
        {"Id": 1, "Fullname": "a", "Time": "t1"},
        {"Id": 2, "Fullname": "a", "Time": "t1"},
    ]
    blob_source.add("f1.json", make_data_envelope(entries), created_at=t0)
    query_client.counts["f1.json"] = 2

    await IngestionLoop(store, ChangeScanner(blob_source), 60).run_cycle()
    assert _state(db_path, "f1.json").processing_status is None

    clock = _Clock(t0 + timedelta(minutes=1))
    coordinator = StatusCoordinator(store)
    processing = ProcessingLoop(
        coordinator, ContentClassifier(blob_source, fast_retry), MIN_AGE, 60, clock=clock
    )

    stats = await processing.run_cycle()
    assert stats.claimed == 0
    assert _state(db_path, "f1.json").processing_status is None

    clock.now = t0 + timedelta(minutes=11)
    stats = await processing.run_cycle()
    assert (stats.claimed, stats.succeeded) == (1, 1)
    state = _state(db_path, "f1.json")
    assert state.processing_status == ProcessingStatus.COMPLETED
    assert (state.total_records, state.distinct_records) == (3, 2)

    verification = VerificationLoop(
        coordinator, ReconciliationVerifier(query_client, fast_retry), TEMPLATE, 60
    )
    stats = await verification.run_cycle()
    assert stats.succeeded == 1
    state = _state(db_path, "f1.json")
    assert state.processing_status == ProcessingStatus.VERIFIED_OK
    assert state.time_series_count == 2

    # Completed objects are not reprocessed
    stats = await processing.run_cycle()
    assert stats.claimed == 0


async def test_processing_failure_is_recorded(store, db_path, blob_source, t0):
    blob_source.add("f1.json", b"{broken", created_at=t0)
    blob_source.add("f2.json", {"ExportedEvents": {"Objects": []}}, created_at=t0)
    await IngestionLoop(store, ChangeScanner(blob_source), 60).run_cycle()

    loop = ProcessingLoop(
        StatusCoordinator(store),
        ContentClassifier(blob_source, RetryPolicy(base_delay=0)),
        MIN_AGE,
        60,
        clock=_Clock(t0 + timedelta(hours=1)),
    )
    stats = await loop.run_cycle()

    assert (stats.succeeded, stats.failed) == (1, 1)
    assert _state(db_path, "f1.json").processing_status == ProcessingStatus.FAILED
    assert _state(db_path, "f2.json").processing_status == ProcessingStatus.COMPLETED


async def test_exhausted_retries_mark_failed(store, db_path, blob_source, t0):
    blob_source.add("f1.json", {"ExportedData": {}}, created_at=t0)
    await IngestionLoop(store, ChangeScanner(blob_source), 60).run_cycle()
    blob_source.transient_failures = 100

    loop = ProcessingLoop(
        StatusCoordinator(store),
        ContentClassifier(blob_source, RetryPolicy(max_retries=3, base_delay=0)),
        MIN_AGE,
        60,
        clock=_Clock(t0 + timedelta(hours=1)),
    )
    await loop.run_cycle()

    assert blob_source.open_calls == 4
    assert _state(db_path, "f1.json").processing_status == ProcessingStatus.FAILED


async def test_verification_failure_is_retried_next_cycle(
    store, db_path, blob_source, query_client, t0
):
    blob_source.add("f1.json", {"ExportedData": {}}, created_at=t0)
    await IngestionLoop(store, ChangeScanner(blob_source), 60).run_cycle()
    coordinator = StatusCoordinator(store)
    await ProcessingLoop(
        coordinator,
        ContentClassifier(blob_source, RetryPolicy(base_delay=0)),
        MIN_AGE,
        60,
        clock=_Clock(t0 + timedelta(hours=1)),
    ).run_cycle()

    query_client.failures = 4
    query_client.default = 0
    loop = VerificationLoop(
        coordinator,
        ReconciliationVerifier(query_client, RetryPolicy(max_retries=3, base_delay=0)),
        TEMPLATE,
        60,
    )
    await loop.run_cycle()
    assert len(query_client.queries) == 4
    assert _state(db_path, "f1.json").processing_status == ProcessingStatus.VERIFIED_FAILED

    await loop.run_cycle()
    state = _state(db_path, "f1.json")
    assert state.processing_status == ProcessingStatus.VERIFIED_OK
    assert state.time_series_count == 0


async def test_ingestion_historical_then_incremental(store, blob_source, t0):
    blob_source.add("old.json", {}, created_at=t0 - timedelta(days=1))
    blob_source.add("new.json", {}, created_at=t0)
    loop = IngestionLoop(store, ChangeScanner(blob_source), 60, process_historical=True)

    first = await loop.run_cycle()
    assert first.upserted == 2

    blob_source.add("newer.json", {}, created_at=t0 + timedelta(minutes=5))
    second = await loop.run_cycle()
    # Scans from the latest stored time (inclusive), so old.json is not revisited
    assert second.upserted == 2


async def test_ingestion_without_historical_uses_latest_time(store, blob_source, t0):
    blob_source.add("a.json", {}, created_at=t0)
    loop = IngestionLoop(store, ChangeScanner(blob_source), 60, process_historical=False)

    # Empty store: full resync
    assert (await loop.run_cycle()).upserted == 1


async def test_cycle_error_is_logged_and_loop_continues(store, blob_source):
    blob_source.list_error = SourceError("container unavailable")
    shutdown = asyncio.Event()
    loop = IngestionLoop(store, ChangeScanner(blob_source), 0.01, shutdown_event=shutdown)

    async def stop_later():
        while loop.cycles < 2:
            await asyncio.sleep(0.01)
        shutdown.set()

    await asyncio.wait_for(asyncio.gather(loop.run(), stop_later()), timeout=5)

    assert loop.cycles >= 2


class _CountingLoop(PollLoop):
    name = "counting"

    def __init__(self, interval, shutdown_event=None, stop_after=None):
        super().__init__(interval, shutdown_event)
        self.stop_after = stop_after
        self.ran = 0

    async def run_cycle(self):
        self.ran += 1
        if self.stop_after is not None and self.ran >= self.stop_after:
            self.shutdown_event.set()


async def test_shutdown_interrupts_sleep():
    loop = _CountingLoop(interval=3600, stop_after=1)

    await asyncio.wait_for(loop.run(), timeout=5)

    assert loop.ran == 1


async def test_shutdown_checked_before_first_cycle():
    shutdown = asyncio.Event()
    shutdown.set()
    loop = _CountingLoop(interval=1, shutdown_event=shutdown)

    await loop.run()

    assert loop.ran == 0


async def test_run_once():
    loop = _CountingLoop(interval=3600)
    await asyncio.wait_for(loop.run(once=True), timeout=5)
    assert loop.ran == 1


async def test_shutdown_stops_after_in_flight_item(store, blob_source, t0):
    for name in ("a.json", "b.json", "c.json"):
        blob_source.add(name, {"ExportedData": {}}, created_at=t0)
    await IngestionLoop(store, ChangeScanner(blob_source), 60).run_cycle()

    shutdown = asyncio.Event()
    coordinator = StatusCoordinator(store)
    loop = ProcessingLoop(
        coordinator,
        ContentClassifier(blob_source, RetryPolicy(base_delay=0)),
        MIN_AGE,
        60,
        shutdown_event=shutdown,
        clock=_Clock(t0 + timedelta(hours=1)),
    )
    original = loop.process_one

    async def process_then_stop(name):
        result = await original(name)
        shutdown.set()
        return result

    loop.process_one = process_then_stop
    stats = await loop.run_cycle()

    assert (stats.succeeded, stats.skipped) == (1, 2)
