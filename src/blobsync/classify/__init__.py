"""Archive content classification and record counting."""

from blobsync.classify.classifier import ContentClassifier, count_records, parse_envelope
from blobsync.classify.schemas import (
    ArchiveEnvelope,
    DataObject,
    EventObject,
    ExportedData,
    ExportedEvents,
    ExportShape,
)

__all__ = [
    "ArchiveEnvelope",
    "ContentClassifier",
    "DataObject",
    "EventObject",
    "ExportShape",
    "ExportedData",
    "ExportedEvents",
    "count_records",
    "parse_envelope",
]
