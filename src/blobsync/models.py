"""Data models and enums for the blob change reconciliation pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# Timestamps are stored as fixed-width UTC text so that lexical order in
# SQLite matches chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def to_db_timestamp(value: datetime) -> str:
    """Normalize *value* to UTC and format it for storage.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeKind(str, Enum):
    """Kind of storage event; part of a change record's identity."""

    CREATED = "Created"
    PROPERTIES_UPDATED = "PropertiesUpdated"
    METADATA_UPDATED = "MetadataUpdated"
    DELETED = "Deleted"
    RENAMED = "Renamed"

    @property
    def is_insert_or_update(self) -> bool:
        return self in INSERT_OR_UPDATE_KINDS


# Kinds that carry content into the pipeline. Status updates are scoped
# to rows of these kinds.
INSERT_OR_UPDATE_KINDS: frozenset[ChangeKind] = frozenset({
    ChangeKind.CREATED,
    ChangeKind.PROPERTIES_UPDATED,
    ChangeKind.METADATA_UPDATED,
})


class ProcessingStatus(str, Enum):
    """Lifecycle status of an object in the reconciliation pipeline.

    An untouched object has no status at all (NULL in the store).
    """

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    VERIFYING = "VERIFYING"
    VERIFIED_OK = "VERIFIED_OK"
    VERIFIED_FAILED = "VERIFIED_FAILED"


@dataclass(slots=True)
class BlobObject:
    """One object as reported by a source collection listing."""

    name: str
    size: int
    content_type: str | None
    etag: str | None
    created_at: datetime | None
    modified_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    version_id: str | None = None


@dataclass(slots=True)
class ChangeRecord:
    """A detected change, uniquely identified by (object_name, change_kind, modified_at)."""

    object_name: str
    change_kind: ChangeKind
    modified_at: datetime
    content_type: str | None = None
    content_length: int | None = None
    etag: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    source_url: str | None = None
    version_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """The uniqueness triple as stored."""
        return (
            self.object_name,
            self.change_kind.value,
            to_db_timestamp(self.modified_at),
        )

    @property
    def metadata_json(self) -> str | None:
        if not self.metadata:
            return None
        return json.dumps(self.metadata, ensure_ascii=False, sort_keys=True)


@dataclass(slots=True)
class ProcessingState:
    """Downstream processing fields attached to an object's change records."""

    total_records: int | None = None
    distinct_records: int | None = None
    processing_status: ProcessingStatus | None = None
    time_series_count: int | None = None

    @property
    def counts_set(self) -> bool:
        return self.total_records is not None and self.distinct_records is not None


@dataclass(frozen=True, slots=True)
class RecordCounts:
    """Result of classifying one object's content."""

    total_records: int
    distinct_records: int
