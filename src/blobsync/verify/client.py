"""Count-query service clients.

:class:`HttpQueryClient` talks to the InfluxDB v1-compatibility
``/query`` endpoint over HTTP(S)::

    GET {base_url}/query?db=<database>&q=<query>
    Authorization: Token <token>
    Accept: application/json
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from blobsync.exceptions import QueryError
from blobsync.verify.extract import extract_count

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0
READ_TIMEOUT = 60.0


@runtime_checkable
class QueryClient(Protocol):
    """Executes a scalar count query."""

    async def query_count(self, query: str) -> int: ...

    async def aclose(self) -> None: ...


class HttpQueryClient:
    """Async HTTP count-query client.

    Usage::

        async with HttpQueryClient("https://influx:8086", "iris", token) as client:
            count = await client.query_count("SELECT count(*) FROM iris_data")
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        token: str,
        *,
        verify_tls: bool = True,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.database = database
        if not verify_tls and self.base_url.startswith("https"):
            logger.warning("TLS certificate validation disabled for %s", self.base_url)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Token {token}", "Accept": "application/json"},
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            verify=verify_tls,
            transport=transport,
        )

    async def query_count(self, query: str) -> int:
        """Run *query* and return the count it yields.

        Raises:
            QueryError: Transport failure or non-200 response (transient).
            QueryServiceError: The service reported a query error.
            CountExtractionError: The response carried no count.
        """
        logger.debug("Executing count query: %s", query)
        try:
            response = await self._client.get(
                "/query", params={"db": self.database, "q": query}
            )
        except httpx.HTTPError as e:
            raise QueryError(f"Count query request failed: {e}") from e

        if response.status_code != httpx.codes.OK:
            raise QueryError(
                f"Count query failed with HTTP {response.status_code}: {response.text[:500]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise QueryError(f"Count query returned invalid JSON: {e}") from e
        return extract_count(payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpQueryClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
