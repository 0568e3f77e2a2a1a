"""Ingestion upserter: merges change records into the Record Store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from blobsync.models import ChangeRecord
from blobsync.store import AsyncRecordStore

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100


@dataclass
class IngestResult:
    """Outcome of one ingestion batch."""

    upserted: int = 0
    skipped: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"upserted={self.upserted}, skipped={self.skipped}, failed={len(self.failed)}"


class IngestionUpserter:
    """Idempotently writes change records, one transaction per record.

    Re-applying a record with the same (object_name, change_kind,
    modified_at) refreshes its descriptive fields and nothing else;
    processing state is never touched.
    """

    def __init__(self, store: AsyncRecordStore) -> None:
        self.store = store

    async def upsert(self, record: ChangeRecord) -> None:
        await self.store.upsert_record(record)
        logger.debug("Upserted change record %s", record.key)

    async def upsert_all(
        self,
        records: Iterable[ChangeRecord],
        shutdown_event: asyncio.Event | None = None,
    ) -> IngestResult:
        """Upsert every insert/update record, continuing past per-record failures.

        When *shutdown_event* is set the batch stops before the next record.
        """
        result = IngestResult()
        for record in records:
            if shutdown_event is not None and shutdown_event.is_set():
                logger.warning("Shutdown requested, stopping ingestion batch")
                break
            if not record.change_kind.is_insert_or_update:
                result.skipped += 1
                continue
            try:
                await self.upsert(record)
            except Exception as e:
                logger.error(
                    "Error upserting change record for %s", record.object_name, exc_info=True
                )
                result.failed.append((record.object_name, str(e)))
                continue
            result.upserted += 1
            if result.upserted % PROGRESS_EVERY == 0:
                logger.info("Upserted %d change records", result.upserted)

        logger.info("Ingestion batch complete: %s", result.summary)
        return result
