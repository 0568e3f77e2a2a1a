"""Object lifecycle finite state machine for the reconciliation pipeline.

The Status Coordinator derives the allowed source statuses of each
conditional UPDATE from this graph.  Nothing here touches the database
and no callbacks are attached.
"""

from __future__ import annotations

from functools import cache

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from blobsync.models import ProcessingStatus

# An untouched object has a NULL status in the store; the FSM needs a
# concrete value for it.
UNTOUCHED = "NEW"


class ObjectLifecycleSM(StateMachine):
    """Seven-state lifecycle of an object through counting and verification.

    States:
        new             -- Ingested, never claimed (NULL status).
        processing      -- Claimed by the processing loop.
        completed       -- Counts recorded.
        failed          -- Classification failed terminally.
        verifying       -- Claimed by the verification loop.
        verified_ok     -- Time-series count recorded.
        verified_failed -- Verification failed; eligible for another attempt.
    """

    new = State("new", initial=True, value=UNTOUCHED)
    processing = State("processing", value=ProcessingStatus.PROCESSING.value)
    completed = State("completed", value=ProcessingStatus.COMPLETED.value)
    failed = State("failed", value=ProcessingStatus.FAILED.value)
    verifying = State("verifying", value=ProcessingStatus.VERIFYING.value)
    verified_ok = State("verified_ok", value=ProcessingStatus.VERIFIED_OK.value, final=True)
    verified_failed = State("verified_failed", value=ProcessingStatus.VERIFIED_FAILED.value)

    # Re-claiming a PROCESSING object is allowed: the claim query does not
    # exclude it, and repeating the count is harmless.
    start_processing = new.to(processing) | processing.to.itself()
    complete_processing = processing.to(completed)
    fail_processing = processing.to(failed)
    start_verification = completed.to(verifying) | verified_failed.to(verifying)
    verify_ok = verifying.to(verified_ok)
    verify_fail = verifying.to(verified_failed)
    # Operator-triggered, outside the automatic pipeline
    retry = failed.to(new)


ALL_STATE_VALUES: tuple[str, ...] = (UNTOUCHED, *(s.value for s in ProcessingStatus))


def create_fsm(current_status: str | None) -> ObjectLifecycleSM:
    """Create an FSM positioned at *current_status* (None means untouched)."""
    return ObjectLifecycleSM(start_value=current_status or UNTOUCHED)


def can_transition(current_status: str | None, event: str) -> bool:
    """Return True if *event* is legal from *current_status*."""
    fsm = create_fsm(current_status)
    try:
        fsm.send(event)
    except TransitionNotAllowed:
        return False
    return True


@cache
def sources_for(event: str) -> tuple[str | None, ...]:
    """Stored status values from which *event* is legal (None for untouched)."""
    return tuple(
        None if value == UNTOUCHED else value
        for value in ALL_STATE_VALUES
        if can_transition(value, event)
    )
