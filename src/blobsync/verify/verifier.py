"""Reconciliation Verifier: per-object time-series count lookup."""

from __future__ import annotations

import logging

from blobsync.exceptions import (
    ConfigError,
    QueryError,
    RetriesExhausted,
    VerificationFailure,
)
from blobsync.pipeline.retry import RetryPolicy
from blobsync.verify.client import QueryClient

logger = logging.getLogger(__name__)

PLACEHOLDER = "{object_name}"


def validate_template(template: str) -> None:
    """Raise ConfigError unless *template* holds exactly one placeholder."""
    occurrences = template.count(PLACEHOLDER)
    if occurrences != 1:
        raise ConfigError(
            [f"query template must contain exactly one {PLACEHOLDER} placeholder, found {occurrences}"]
        )


def build_query(template: str, object_name: str) -> str:
    """Substitute *object_name* into the template's single placeholder.

    Single quotes in the name are doubled so the value stays inside a
    quoted string literal.
    """
    validate_template(template)
    return template.replace(PLACEHOLDER, object_name.replace("'", "''"))


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, QueryError)


class ReconciliationVerifier:
    """Looks up each object's count in the time-series store."""

    def __init__(self, client: QueryClient, retry_policy: RetryPolicy) -> None:
        self.client = client
        self.retry_policy = retry_policy

    async def verify(self, object_name: str, query_template: str) -> int:
        """Return the time-series count for *object_name*.

        Raises:
            VerificationFailure: Retries exhausted or the response held no count.
        """
        query = build_query(query_template, object_name)
        try:
            count = await self.retry_policy.run(
                lambda: self.client.query_count(query),
                retry_if=_is_transient,
                label=f"verification of {object_name}",
            )
        except RetriesExhausted as e:
            raise VerificationFailure(
                object_name,
                f"Count query failed after {e.attempts} attempts: {e.last_error}",
                attempts=e.attempts,
            ) from e
        except Exception as e:
            raise VerificationFailure(object_name, f"Count query failed: {e}") from e
        logger.info("Time-series count for %s is %d", object_name, count)
        return count
