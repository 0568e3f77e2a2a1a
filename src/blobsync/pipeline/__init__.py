"""Lifecycle FSM, Status Coordinator, retry policy and poll loops.

Loops and the runner live in :mod:`blobsync.pipeline.loops` and
:mod:`blobsync.pipeline.runner`; import them from there.
"""

from blobsync.pipeline.fsm import ObjectLifecycleSM, create_fsm, sources_for
from blobsync.pipeline.retry import RetryPolicy

__all__ = ["ObjectLifecycleSM", "RetryPolicy", "create_fsm", "sources_for"]
