"""blobsync - blob change ingestion and count reconciliation pipeline."""

__version__ = "0.1.0"
