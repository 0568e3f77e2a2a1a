"""Content classifier and record counter for archived export files.

For one object:

1. Fetch the content (NotFound fails immediately).
2. Parse the JSON envelope; syntax errors carry line/column, schema
   errors carry the field path.
3. Decide the shape once: exactly one of ExportedData/ExportedEvents.
4. total = number of entries; distinct = number of unique identity keys.

Transient source failures are retried with bounded exponential backoff;
parse and structure failures are reported on the first attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pydantic import ValidationError

from blobsync.classify.schemas import (
    ArchiveEnvelope,
    ExportedEvents,
    ExportShape,
)
from blobsync.exceptions import (
    FailureKind,
    ProcessingFailure,
    RetriesExhausted,
    SourceError,
    SourceNotFoundError,
)
from blobsync.models import RecordCounts
from blobsync.pipeline.retry import RetryPolicy
from blobsync.source import BlobSource

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SourceError) and not isinstance(exc, SourceNotFoundError)


def _format_loc(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc)


def parse_envelope(object_name: str, raw: bytes) -> ExportShape:
    """Parse raw archive content and return its single shape.

    Raises:
        ProcessingFailure: PARSE for malformed JSON or schema violations,
            STRUCTURE when the envelope carries neither or both shapes.
    """
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProcessingFailure(
            object_name,
            FailureKind.PARSE,
            f"JSON parse error: {e.msg}",
            line=e.lineno,
            column=e.colno,
        ) from e
    except UnicodeDecodeError as e:
        raise ProcessingFailure(
            object_name, FailureKind.PARSE, f"Content is not valid UTF-8 JSON: {e}"
        ) from e

    if not isinstance(document, dict):
        raise ProcessingFailure(
            object_name,
            FailureKind.STRUCTURE,
            f"Expected a JSON object envelope, got {type(document).__name__}",
        )

    try:
        envelope = ArchiveEnvelope.model_validate(document)
    except ValidationError as e:
        first = e.errors()[0]
        raise ProcessingFailure(
            object_name,
            FailureKind.PARSE,
            f"JSON mapping error: {first['msg']}",
            path=_format_loc(first["loc"]),
        ) from e

    has_data = envelope.exported_data is not None
    has_events = envelope.exported_events is not None
    if has_data and has_events:
        raise ProcessingFailure(
            object_name,
            FailureKind.STRUCTURE,
            "Invalid file structure - both ExportedData and ExportedEvents found",
        )
    if has_events:
        return envelope.exported_events
    if has_data:
        return envelope.exported_data
    raise ProcessingFailure(
        object_name,
        FailureKind.STRUCTURE,
        "Invalid file structure - neither ExportedData nor ExportedEvents found",
    )


def count_records(shape: ExportShape) -> RecordCounts:
    """Count total entries and entries distinct by the shape's identity key."""
    entries = shape.entries
    distinct = {entry.identity_key for entry in entries}
    return RecordCounts(total_records=len(entries), distinct_records=len(distinct))


class ContentClassifier:
    """Downloads, classifies and counts archived objects.

    Usage::

        classifier = ContentClassifier(LocalBlobSource(archive_root), RetryPolicy())
        counts = await classifier.classify("IRIS_Data_2024-01-01.json")
    """

    def __init__(self, source: BlobSource, retry_policy: RetryPolicy) -> None:
        self.source = source
        self.retry_policy = retry_policy

    def fetch(self, object_name: str) -> bytes:
        if not self.source.exists(object_name):
            logger.warning("Blob does not exist in archive source: %s", object_name)
            raise SourceNotFoundError(f"Object does not exist: {object_name}")
        with self.source.open(object_name) as stream:
            try:
                return stream.read()
            except OSError as e:
                raise SourceError(f"Failed to read {object_name}: {e}") from e

    def classify_content(self, object_name: str, raw: bytes) -> RecordCounts:
        shape = parse_envelope(object_name, raw)
        counts = count_records(shape)
        kind = "events" if isinstance(shape, ExportedEvents) else "data"
        logger.debug(
            "Parsed %s file %s: total records=%d, distinct records=%d",
            kind,
            object_name,
            counts.total_records,
            counts.distinct_records,
        )
        return counts

    def read_and_count(self, object_name: str) -> RecordCounts:
        return self.classify_content(object_name, self.fetch(object_name))

    async def _attempt(self, object_name: str) -> RecordCounts:
        # Decoding and validation of large objects stay off the event loop
        return await asyncio.to_thread(self.read_and_count, object_name)

    async def classify(self, object_name: str) -> RecordCounts:
        """Classify one object with bounded retries.

        Raises:
            ProcessingFailure: Terminal failure for this object.
        """
        try:
            return await self.retry_policy.run(
                lambda: self._attempt(object_name),
                retry_if=_is_transient,
                label=f"classification of {object_name}",
            )
        except ProcessingFailure:
            raise
        except SourceNotFoundError as e:
            raise ProcessingFailure(object_name, FailureKind.NOT_FOUND, str(e)) from e
        except RetriesExhausted as e:
            raise ProcessingFailure(
                object_name,
                FailureKind.RETRIES_EXHAUSTED,
                f"Failed to read object after {e.attempts} attempts: {e.last_error}",
                attempts=e.attempts,
            ) from e
        except Exception as e:
            raise ProcessingFailure(
                object_name, FailureKind.SOURCE, f"Failed to parse file: {e}"
            ) from e
