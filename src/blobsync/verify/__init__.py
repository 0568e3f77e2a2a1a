"""Time-series count reconciliation."""

from blobsync.verify.client import HttpQueryClient, QueryClient
from blobsync.verify.extract import extract_count
from blobsync.verify.verifier import ReconciliationVerifier, build_query, validate_template

__all__ = [
    "HttpQueryClient",
    "QueryClient",
    "ReconciliationVerifier",
    "build_query",
    "extract_count",
    "validate_template",
]
