"""
Confirmation rules for leaving the booking workflow.
"""
from models import BookingDraft
from states import WorkflowState


def can_close(state: WorkflowState) -> bool:
    """Closing is blocked outright while a gateway session is in flight."""
    return state is not WorkflowState.PROCESSING


def should_confirm(state: WorkflowState, draft: BookingDraft) -> bool:
    """True when leaving now would throw away typed trip data or a quoted fare."""
    if state is not WorkflowState.BOOKING:
        return False
    return bool(draft.source or draft.destination or draft.fare)


def reset(draft: BookingDraft) -> None:
    """Back to the initial, empty draft."""
    draft.source = ""
    draft.destination = ""
    draft.pickup_time = None
    draft.source_coord = None
    draft.dest_coord = None
    draft.clear_fare()
