"""Status Coordinator: the only writer of ``processing_status``.

Claims are plain SELECTs whose predicates partition the status domain
at the object level, so the processing and verification loops never select the same object.
Every mark is a single conditional UPDATE scoped to the object's
insert/update change kinds and to the FSM-legal source statuses, and
commits immediately.  A mark that matches no rows is logged and reported
as ``False``; the object may have been removed or relabeled
concurrently.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from blobsync.database import KIND_PLACEHOLDERS, KIND_VALUES
from blobsync.models import ProcessingStatus, RecordCounts, to_db_timestamp, utc_now
from blobsync.pipeline.fsm import sources_for
from blobsync.store import AsyncRecordStore

logger = logging.getLogger(__name__)

# Objects in these statuses are never handed to the processing loop.
_NOT_PROCESSABLE = (
    ProcessingStatus.COMPLETED.value,
    ProcessingStatus.FAILED.value,
    ProcessingStatus.VERIFYING.value,
    ProcessingStatus.VERIFIED_OK.value,
    ProcessingStatus.VERIFIED_FAILED.value,
)

_VERIFIABLE = (
    ProcessingStatus.COMPLETED.value,
    ProcessingStatus.VERIFIED_FAILED.value,
)

# An object with any content row still awaiting its count is not verifiable.
_AWAITING_COUNT = f"""SELECT object_name FROM change_records
    WHERE change_kind IN ({KIND_PLACEHOLDERS})
      AND (processing_status IS NULL OR processing_status = ?)"""

# An object with any row under verification is not processable.
_UNDER_VERIFICATION = f"""SELECT object_name FROM change_records
    WHERE change_kind IN ({KIND_PLACEHOLDERS})
      AND processing_status = ?"""


def _status_guard(event: str) -> tuple[str, tuple[str, ...]]:
    """Build a WHERE fragment admitting the FSM source statuses of *event*."""
    sources = sources_for(event)
    values = tuple(s for s in sources if s is not None)
    clauses = []
    if None in sources:
        clauses.append("processing_status IS NULL")
    if values:
        placeholders = ", ".join("?" for _ in values)
        clauses.append(f"processing_status IN ({placeholders})")
    return "(" + " OR ".join(clauses) + ")", values


class StatusCoordinator:
    """Claims eligible objects and applies lifecycle transitions.

    Usage::

        async with AsyncRecordStore(db_path) as store:
            coordinator = StatusCoordinator(store)
            for name in await coordinator.claim_for_processing(timedelta(minutes=10)):
                await coordinator.mark_processing(name)
    """

    def __init__(self, store: AsyncRecordStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim_for_processing(
        self, min_age: timedelta, now: datetime | None = None
    ) -> list[str]:
        """Return objects old enough to count whose counts are not yet known.

        Eligible objects were last modified before ``now - min_age``, lack
        at least one of the two counts, and are untouched or PROCESSING.
        Objects with a row under verification wait for it to finish.
        Ordered by object name.
        """
        db = self.store.ensure_connected()
        cutoff = to_db_timestamp((now or utc_now()) - min_age)
        placeholders = ", ".join("?" for _ in _NOT_PROCESSABLE)
        cursor = await db.execute(
            f"""SELECT DISTINCT object_name FROM change_records
                WHERE modified_at < ?
                  AND (total_records IS NULL OR distinct_records IS NULL)
                  AND (processing_status IS NULL
                       OR processing_status NOT IN ({placeholders}))
                  AND object_name NOT IN ({_UNDER_VERIFICATION})
                ORDER BY object_name""",
            (
                cutoff,
                *_NOT_PROCESSABLE,
                *KIND_VALUES,
                ProcessingStatus.VERIFYING.value,
            ),
        )
        rows = await cursor.fetchall()
        return [row["object_name"] for row in rows]

    async def claim_for_verification(self) -> list[str]:
        """Return objects whose counts are COMPLETED or whose verification failed.

        An object that also has an uncounted or PROCESSING content row is
        left to the processing loop until the new content is counted.
        """
        db = self.store.ensure_connected()
        placeholders = ", ".join("?" for _ in _VERIFIABLE)
        cursor = await db.execute(
            f"""SELECT DISTINCT object_name FROM change_records
                WHERE processing_status IN ({placeholders})
                  AND object_name NOT IN ({_AWAITING_COUNT})
                ORDER BY object_name""",
            (*_VERIFIABLE, *KIND_VALUES, ProcessingStatus.PROCESSING.value),
        )
        rows = await cursor.fetchall()
        return [row["object_name"] for row in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        object_name: str,
        event: str,
        target: ProcessingStatus,
        assignments: str = "",
        values: tuple[object, ...] = (),
    ) -> bool:
        db = self.store.ensure_connected()
        guard, guard_values = _status_guard(event)
        cursor = await db.execute(
            f"""UPDATE change_records
                SET processing_status = ?{assignments}
                WHERE object_name = ?
                  AND change_kind IN ({KIND_PLACEHOLDERS})
                  AND {guard}""",
            (target.value, *values, object_name, *KIND_VALUES, *guard_values),
        )
        await db.commit()
        if cursor.rowcount == 0:
            logger.warning(
                "No rows updated marking %s as %s (removed or already transitioned)",
                object_name,
                target.value,
            )
            return False
        logger.debug("Marked %s as %s (%d rows)", object_name, target.value, cursor.rowcount)
        return True

    async def mark_processing(self, object_name: str) -> bool:
        return await self._transition(
            object_name, "start_processing", ProcessingStatus.PROCESSING
        )

    async def mark_completed(self, object_name: str, counts: RecordCounts) -> bool:
        """Record the object's counts together with COMPLETED."""
        return await self._transition(
            object_name,
            "complete_processing",
            ProcessingStatus.COMPLETED,
            ", total_records = ?, distinct_records = ?",
            (counts.total_records, counts.distinct_records),
        )

    async def mark_failed(self, object_name: str) -> bool:
        return await self._transition(object_name, "fail_processing", ProcessingStatus.FAILED)

    async def mark_verifying(self, object_name: str) -> bool:
        return await self._transition(
            object_name, "start_verification", ProcessingStatus.VERIFYING
        )

    async def mark_verified_ok(self, object_name: str, time_series_count: int) -> bool:
        """Record the time-series count together with VERIFIED_OK."""
        return await self._transition(
            object_name,
            "verify_ok",
            ProcessingStatus.VERIFIED_OK,
            ", time_series_count = ?",
            (time_series_count,),
        )

    async def mark_verified_failed(self, object_name: str) -> bool:
        return await self._transition(
            object_name, "verify_fail", ProcessingStatus.VERIFIED_FAILED
        )
