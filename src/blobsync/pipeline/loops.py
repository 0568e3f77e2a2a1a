"""The three independent poll loops: ingestion, processing, verification.

Each loop repeats: claim work, handle each item in turn, sleep for its
interval.  A shutdown event is checked at the top of every cycle and
between items, and it cuts the inter-cycle sleep short, so a stop
request takes effect after the in-flight item completes.  Loops share
no in-memory state; they coordinate only through the Record Store.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from blobsync.classify.classifier import ContentClassifier
from blobsync.exceptions import ProcessingFailure, VerificationFailure
from blobsync.ingest.scanner import ChangeScanner
from blobsync.ingest.upserter import IngestionUpserter, IngestResult
from blobsync.models import utc_now
from blobsync.pipeline.coordinator import StatusCoordinator
from blobsync.store import AsyncRecordStore
from blobsync.verify.verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10


@dataclass
class CycleStats:
    """Per-cycle outcome of the processing or verification loop."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class PollLoop:
    """Claim, handle, sleep, repeat until the shutdown event is set."""

    name = "poll"

    def __init__(self, interval: float, shutdown_event: asyncio.Event | None = None) -> None:
        self.interval = interval
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.cycles = 0

    async def run_cycle(self) -> object:
        raise NotImplementedError

    async def run(self, once: bool = False) -> None:
        """Run cycles until shutdown (or a single cycle with *once*).

        A failing cycle is logged and retried after the interval.  With
        *once* the error propagates instead.
        """
        logger.info("Starting %s loop (interval %.0fs)", self.name, self.interval)
        while not self.shutdown_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                if once:
                    raise
                logger.exception("Error running %s cycle", self.name)
            self.cycles += 1
            if once:
                break
            await self._sleep()
        logger.info("%s loop stopped after %d cycles", self.name.capitalize(), self.cycles)

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.interval)
        except TimeoutError:
            pass


class IngestionLoop(PollLoop):
    """Scans the source collection and upserts the detected changes.

    The first cycle is a full resync when *process_historical* is set;
    later cycles scan from the latest stored modification time.
    """

    name = "ingestion"

    def __init__(
        self,
        store: AsyncRecordStore,
        scanner: ChangeScanner,
        interval: float,
        *,
        process_historical: bool = True,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(interval, shutdown_event)
        self.store = store
        self.scanner = scanner
        self.upserter = IngestionUpserter(store)
        self.process_historical = process_historical
        self._first_run = True

    async def run_cycle(self) -> IngestResult:
        if self._first_run and self.process_historical:
            since = None
            logger.info("Processing all objects (historical resync)")
        else:
            since = await self.store.get_last_modified()
            logger.debug("Scanning for changes since %s", since)

        records = await asyncio.to_thread(self.scanner.scan, since)
        result = await self.upserter.upsert_all(records, self.shutdown_event)

        if self._first_run and self.process_historical:
            logger.info("Historical resync complete, now monitoring new changes only")
        self._first_run = False
        return result


class ProcessingLoop(PollLoop):
    """Classifies and counts objects that have aged past *min_age*."""

    name = "processing"

    def __init__(
        self,
        coordinator: StatusCoordinator,
        classifier: ContentClassifier,
        min_age: timedelta,
        interval: float,
        *,
        shutdown_event: asyncio.Event | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(interval, shutdown_event)
        self.coordinator = coordinator
        self.classifier = classifier
        self.min_age = min_age
        self.clock = clock

    async def process_one(self, object_name: str) -> bool:
        """Claim, classify and record one object; returns True on COMPLETED."""
        if not await self.coordinator.mark_processing(object_name):
            return False
        try:
            counts = await self.classifier.classify(object_name)
        except ProcessingFailure as e:
            logger.error("Failed to process %s: %s", object_name, e)
            await self.coordinator.mark_failed(object_name)
            return False
        logger.debug(
            "Processed %s: total=%d, distinct=%d",
            object_name,
            counts.total_records,
            counts.distinct_records,
        )
        return await self.coordinator.mark_completed(object_name, counts)

    async def run_cycle(self) -> CycleStats:
        stats = CycleStats()
        names = await self.coordinator.claim_for_processing(self.min_age, self.clock())
        if not names:
            logger.debug("No objects eligible for processing")
            return stats

        stats.claimed = len(names)
        logger.info("Found %d objects to process", stats.claimed)
        for index, object_name in enumerate(names):
            if self.shutdown_event.is_set():
                stats.skipped = stats.claimed - index
                logger.warning("Shutdown requested, skipping %d remaining objects", stats.skipped)
                break
            try:
                ok = await self.process_one(object_name)
            except Exception:
                logger.exception("Unexpected error processing %s", object_name)
                ok = False
            if ok:
                stats.succeeded += 1
                if stats.succeeded % PROGRESS_EVERY == 0:
                    logger.info("Processed %d/%d objects", stats.succeeded, stats.claimed)
            else:
                stats.failed += 1

        logger.info(
            "Processing cycle complete. Processed: %d, Failed: %d, Skipped: %d",
            stats.succeeded,
            stats.failed,
            stats.skipped,
        )
        return stats


class VerificationLoop(PollLoop):
    """Reconciles COMPLETED objects against the time-series store."""

    name = "verification"

    def __init__(
        self,
        coordinator: StatusCoordinator,
        verifier: ReconciliationVerifier,
        query_template: str,
        interval: float,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(interval, shutdown_event)
        self.coordinator = coordinator
        self.verifier = verifier
        self.query_template = query_template

    async def verify_one(self, object_name: str) -> bool:
        """Claim, query and record one object; returns True on VERIFIED_OK."""
        if not await self.coordinator.mark_verifying(object_name):
            return False
        try:
            count = await self.verifier.verify(object_name, self.query_template)
        except VerificationFailure as e:
            logger.error("Failed to verify %s: %s", object_name, e)
            await self.coordinator.mark_verified_failed(object_name)
            return False
        return await self.coordinator.mark_verified_ok(object_name, count)

    async def _record_failure(self, object_name: str) -> None:
        # VERIFYING is never reclaimed, so leave the object VERIFIED_FAILED
        try:
            await self.coordinator.mark_verified_failed(object_name)
        except Exception:
            logger.exception("Could not mark %s as VERIFIED_FAILED", object_name)

    async def run_cycle(self) -> CycleStats:
        stats = CycleStats()
        names = await self.coordinator.claim_for_verification()
        if not names:
            logger.debug("No objects awaiting verification")
            return stats

        stats.claimed = len(names)
        logger.info("Found %d objects to verify", stats.claimed)
        for index, object_name in enumerate(names):
            if self.shutdown_event.is_set():
                stats.skipped = stats.claimed - index
                logger.warning("Shutdown requested, skipping %d remaining objects", stats.skipped)
                break
            try:
                ok = await self.verify_one(object_name)
            except Exception:
                logger.exception("Unexpected error verifying %s", object_name)
                await self._record_failure(object_name)
                ok = False
            if ok:
                stats.succeeded += 1
            else:
                stats.failed += 1

        logger.info(
            "Verification cycle complete. OK: %d, Failed: %d, Skipped: %d",
            stats.succeeded,
            stats.failed,
            stats.skipped,
        )
        return stats
