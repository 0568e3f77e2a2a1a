"""Change scanning and ingestion into the Record Store."""

from blobsync.ingest.scanner import ChangeScanner, classify_change_kind
from blobsync.ingest.upserter import IngestionUpserter, IngestResult

__all__ = [
    "ChangeScanner",
    "IngestResult",
    "IngestionUpserter",
    "classify_change_kind",
]
