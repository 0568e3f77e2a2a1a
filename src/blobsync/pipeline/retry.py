"""Bounded exponential backoff shared by every externally-fallible step."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from blobsync.exceptions import RetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry transient failures up to *max_retries* times after the first attempt.

    The delay before retry *n* is ``base_delay * 2 ** (n - 1)`` seconds
    (1s, 2s, 4s with the defaults).
    """

    max_retries: int = 3
    base_delay: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def _retrying(self, retry_if: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=0),
            retry=retry_if_exception(retry_if),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=False,
        )

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_if: Callable[[BaseException], bool],
        label: str,
    ) -> T:
        """Await ``fn()`` until it succeeds, a non-retryable error occurs, or attempts run out.

        Errors for which *retry_if* is false propagate unchanged on the
        attempt that raised them.

        Raises:
            RetriesExhausted: When every attempt failed with a retryable error.
        """
        try:
            async for attempt in self._retrying(retry_if):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "Retry attempt %d of %d for %s",
                            attempt.retry_state.attempt_number - 1,
                            self.max_retries,
                            label,
                        )
                    result = await fn()
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(
                "All %d attempts exhausted for %s", e.last_attempt.attempt_number, label
            )
            raise RetriesExhausted(label, e.last_attempt.attempt_number, last) from last
        return result
