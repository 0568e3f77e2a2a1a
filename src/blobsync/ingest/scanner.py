"""Change scanner: turns a source collection listing into change records.

The source is polled, not subscribed to.  Every object modified at or
after ``since`` is reported as either Created or PropertiesUpdated,
based on whether its creation and modification times differ.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from blobsync.exceptions import SourceError
from blobsync.models import BlobObject, ChangeKind, ChangeRecord
from blobsync.source import BlobSource

logger = logging.getLogger(__name__)


def classify_change_kind(obj: BlobObject) -> ChangeKind:
    """Decide the event kind for a listed object.

    An object with no creation time, or whose creation time equals its
    modification time, has no detectable prior version and is Created.
    """
    if obj.created_at is None or obj.created_at == obj.modified_at:
        return ChangeKind.CREATED
    return ChangeKind.PROPERTIES_UPDATED


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ChangeScanner:
    """Lists a source collection and produces change records.

    Usage::

        scanner = ChangeScanner(LocalBlobSource(root))
        records = scanner.scan(since=last_modified)
    """

    def __init__(self, source: BlobSource, prefix: str | None = None) -> None:
        self.source = source
        self.prefix = prefix

    def to_record(self, obj: BlobObject) -> ChangeRecord:
        return ChangeRecord(
            object_name=obj.name,
            change_kind=classify_change_kind(obj),
            modified_at=_as_utc(obj.modified_at),
            content_type=obj.content_type,
            content_length=obj.size,
            etag=obj.etag,
            metadata=dict(obj.metadata),
            source_url=obj.url,
            version_id=obj.version_id,
        )

    def scan(self, since: datetime | None = None) -> list[ChangeRecord]:
        """Return change records for objects modified at or after *since*.

        Args:
            since: Lower bound (inclusive) on modification time.  ``None``
                returns every object currently in the collection.

        Returns:
            Change records ordered by object name.

        Raises:
            SourceError: If the collection cannot be listed.  The caller
                owns the retry cadence.
        """
        cutoff = _as_utc(since) if since is not None else None
        if cutoff is None:
            logger.info("Scanning source for all objects (full resync)")
        else:
            logger.info("Scanning source for changes since %s", cutoff.isoformat())

        records: list[ChangeRecord] = []
        try:
            for obj in self.source.list(self.prefix):
                if cutoff is not None and _as_utc(obj.modified_at) < cutoff:
                    continue
                record = self.to_record(obj)
                if not record.change_kind.is_insert_or_update:
                    continue
                records.append(record)
        except SourceError:
            raise
        except Exception as e:
            raise SourceError(f"Failed to read blob changes: {e}") from e

        records.sort(key=lambda r: (r.object_name, r.modified_at))
        logger.info("Found %d blob changes", len(records))
        return records
