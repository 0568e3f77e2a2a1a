"""Runs the selected poll loops as concurrent asyncio tasks in one process.

* Each loop gets its own Record Store connection
* Handles graceful shutdown on Ctrl+C (SIGINT/SIGTERM)
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import AsyncExitStack
from datetime import timedelta
from pathlib import Path
from typing import Any

from blobsync.classify.classifier import ContentClassifier
from blobsync.config import STAGES, AppConfig
from blobsync.ingest.scanner import ChangeScanner
from blobsync.pipeline.coordinator import StatusCoordinator
from blobsync.pipeline.loops import IngestionLoop, PollLoop, ProcessingLoop, VerificationLoop
from blobsync.pipeline.retry import RetryPolicy
from blobsync.source import BlobSource, LocalBlobSource
from blobsync.store import AsyncRecordStore
from blobsync.verify.client import HttpQueryClient, QueryClient
from blobsync.verify.verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Builds and runs the ingestion, processing and verification loops.

    Usage::

        runner = PipelineRunner(load_config(), stages=("process", "verify"))
        asyncio.run(runner.run())
    """

    def __init__(
        self,
        config: AppConfig,
        stages: tuple[str, ...] = STAGES,
        *,
        source: BlobSource | None = None,
        query_client: QueryClient | None = None,
    ) -> None:
        self._config = config
        self._stages = stages
        self._source = source
        self._query_client = query_client
        self._shutdown_event = asyncio.Event()
        self._signal_count = 0
        self._previous_handlers: dict[int, Any] = {}

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def setup_signal_handlers(self) -> None:
        """Register SIGINT/SIGTERM handlers for graceful shutdown.

        Must be called from within the running event loop.

        First signal sets the shutdown event (finish the in-flight item).
        Second signal forces immediate exit.
        """
        self._signal_count = 0
        loop = asyncio.get_running_loop()

        def _handler(signum: int, frame: Any) -> None:
            self._signal_count += 1
            if self._signal_count == 1:
                logger.warning("Graceful shutdown initiated, finishing current items...")
                # Wakes the selector so an inter-cycle sleep ends now
                loop.call_soon_threadsafe(self._shutdown_event.set)
            else:
                logger.warning("Forced shutdown. Exiting immediately.")
                raise SystemExit(1)

        try:
            self._previous_handlers = {
                signum: signal.signal(signum, _handler)
                for signum in (signal.SIGINT, signal.SIGTERM)
            }
        except (OSError, ValueError):
            # signal handlers can only be set in main thread
            logger.debug("Could not set signal handlers (not main thread)")

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _retry_policy(self) -> RetryPolicy:
        pipeline = self._config.pipeline
        return RetryPolicy(max_retries=pipeline.max_retries, base_delay=pipeline.retry_base_delay)

    def _get_source(self) -> BlobSource:
        if self._source is None:
            self._source = LocalBlobSource(Path(self._config.source.root))
        return self._source

    async def _open_store(self, stack: AsyncExitStack) -> AsyncRecordStore:
        return await stack.enter_async_context(AsyncRecordStore(self._config.database.path))

    def _get_query_client(self, stack: AsyncExitStack) -> QueryClient:
        if self._query_client is None:
            query = self._config.query
            client = HttpQueryClient(
                query.base_url,
                query.database,
                query.token,
                verify_tls=not query.skip_tls_validation,
                connect_timeout=query.connect_timeout,
                read_timeout=query.read_timeout,
            )
            stack.push_async_callback(client.aclose)
            self._query_client = client
        return self._query_client

    async def build_loops(self, stack: AsyncExitStack) -> list[PollLoop]:
        """Create one loop per selected stage, registering cleanups on *stack*."""
        config = self._config
        pipeline = config.pipeline
        loops: list[PollLoop] = []

        if "ingest" in self._stages:
            store = await self._open_store(stack)
            scanner = ChangeScanner(self._get_source(), prefix=config.source.prefix)
            loops.append(
                IngestionLoop(
                    store,
                    scanner,
                    pipeline.ingestion_interval_seconds,
                    process_historical=config.source.process_historical,
                    shutdown_event=self._shutdown_event,
                )
            )

        if "process" in self._stages:
            store = await self._open_store(stack)
            classifier = ContentClassifier(self._get_source(), self._retry_policy())
            loops.append(
                ProcessingLoop(
                    StatusCoordinator(store),
                    classifier,
                    timedelta(minutes=pipeline.min_age_minutes),
                    pipeline.processing_interval_seconds,
                    shutdown_event=self._shutdown_event,
                )
            )

        if "verify" in self._stages:
            store = await self._open_store(stack)
            verifier = ReconciliationVerifier(self._get_query_client(stack), self._retry_policy())
            loops.append(
                VerificationLoop(
                    StatusCoordinator(store),
                    verifier,
                    config.query.template,
                    pipeline.verification_interval_seconds,
                    shutdown_event=self._shutdown_event,
                )
            )

        return loops

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self, once: bool = False) -> None:
        """Run every selected loop until shutdown (or one cycle each with *once*)."""
        self.setup_signal_handlers()
        try:
            async with AsyncExitStack() as stack:
                loops = await self.build_loops(stack)
                logger.info("Running %s", ", ".join(loop.name for loop in loops))
                await asyncio.gather(*(loop.run(once=once) for loop in loops))
        finally:
            self.restore_signal_handlers()
        logger.info("Pipeline stopped")
