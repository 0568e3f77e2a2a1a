"""Scalar count extraction from count-query responses.

Backends answer a ``count(*)`` query in different shapes:

* tabular, an array of row objects: ``[{"count(*)": 42}]``
* a single object: ``{"count": 42}``
* InfluxQL (v1 compatibility):
  ``{"results": [{"series": [{"columns": ["time", "count"], "values": [[0, 42]]}]}]}``

Strategies are tried in order: a direct count field, the only numeric
field of the row, then the nested results/series/values traversal.  A
response matching none of them is an error; it never counts as zero.
"""

from __future__ import annotations

import logging
from typing import Any

from blobsync.exceptions import CountExtractionError, QueryServiceError

logger = logging.getLogger(__name__)

COUNT_FIELDS = ("count(*)", "count")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_count(value: Any) -> int | None:
    """Accept a number, or a string of digits such as ``"42"``."""
    if _is_number(value):
        return int(value)
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def _first_row(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return payload[0]
    if isinstance(payload, dict):
        return payload
    return None


def _from_row(row: dict[str, Any]) -> int | None:
    for field in COUNT_FIELDS:
        count = _as_count(row[field]) if field in row else None
        if count is not None:
            logger.debug("Extracted count from '%s' field", field)
            return count
    numeric = [name for name, value in row.items() if _is_number(value)]
    if len(numeric) == 1:
        logger.debug("Extracted count from only numeric field '%s'", numeric[0])
        return int(row[numeric[0]])
    return None


def _from_series(payload: dict[str, Any]) -> int | None:
    results = payload.get("results")
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        return None
    first = results[0]
    if "error" in first:
        raise QueryServiceError(f"Query service error: {first['error']}")
    try:
        value = first["series"][0]["values"][0][-1]
    except (KeyError, IndexError, TypeError):
        return None
    if not _is_number(value):
        return None
    logger.debug("Extracted count from results/series/values")
    return int(value)


def extract_count(payload: Any) -> int:
    """Return the single scalar count carried by *payload*.

    Raises:
        QueryServiceError: The response reports a query error.
        CountExtractionError: No strategy found a count.
    """
    row = _first_row(payload)
    if row is not None:
        count = _from_row(row)
        if count is not None:
            return count
    elif isinstance(payload, list) and payload and _is_number(payload[0]):
        return int(payload[0])

    if isinstance(payload, dict):
        count = _from_series(payload)
        if count is not None:
            return count

    raise CountExtractionError(f"Could not extract count from response: {payload!r:.200}")
