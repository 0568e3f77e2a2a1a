"""Exception hierarchy for the blobsync pipeline.

Transient errors (``SourceError``, ``QueryError``) are retried by the
bounded backoff policy in :mod:`blobsync.pipeline.retry`.  Everything
else is terminal for the item it concerns.
"""

from __future__ import annotations

from enum import Enum


class BlobsyncError(Exception):
    """Base class for all blobsync errors."""


class ConfigError(BlobsyncError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Invalid configuration:\n  - " + "\n  - ".join(problems))


# ---------------------------------------------------------------------------
# Source collection
# ---------------------------------------------------------------------------


class SourceError(BlobsyncError):
    """Source collection could not be accessed (listing, stat or read)."""


class SourceNotFoundError(SourceError):
    """The requested object does not exist in the source collection."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    """Category of a classification failure."""

    NOT_FOUND = "not_found"
    PARSE = "parse"
    STRUCTURE = "structure"
    SOURCE = "source"
    RETRIES_EXHAUSTED = "retries_exhausted"


class ProcessingFailure(BlobsyncError):
    """Structured, terminal failure to classify one object.

    Attributes:
        object_name: The object that failed.
        kind: Failure category.
        line/column: Position of a JSON syntax error, when known.
        path: Field path of a schema error (e.g. ``ExportedData.Objects.3.Id``).
        attempts: Number of attempts made before giving up.
    """

    def __init__(
        self,
        object_name: str,
        kind: FailureKind,
        message: str,
        *,
        line: int | None = None,
        column: int | None = None,
        path: str | None = None,
        attempts: int = 1,
    ) -> None:
        self.object_name = object_name
        self.kind = kind
        self.line = line
        self.column = column
        self.path = path
        self.attempts = attempts
        super().__init__(message)

    @property
    def position(self) -> str | None:
        """Human-readable position detail, if any."""
        if self.line is not None:
            return f"line {self.line}, column {self.column}"
        if self.path:
            return f"path {self.path}"
        return None

    def __str__(self) -> str:
        base = f"[{self.kind.value}] {self.object_name}: {self.args[0]}"
        position = self.position
        return f"{base} ({position})" if position else base


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class QueryError(BlobsyncError):
    """Transient count-query failure (transport error or non-200 response)."""


class QueryServiceError(BlobsyncError):
    """The query service reported an error in an otherwise valid response."""


class CountExtractionError(BlobsyncError):
    """No count could be extracted from a query response."""


class VerificationFailure(BlobsyncError):
    """Terminal failure to verify one object."""

    def __init__(self, object_name: str, message: str, attempts: int = 1) -> None:
        self.object_name = object_name
        self.attempts = attempts
        super().__init__(message)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class RetriesExhausted(BlobsyncError):
    """A transient failure persisted through every allowed attempt."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
