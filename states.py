"""
Workflow states and FSM states for the truck booking flow
"""
from enum import Enum

from aiogram.fsm.state import State, StatesGroup


class WorkflowState(str, Enum):
    """Which step of the booking workflow is shown and which data is trustworthy."""

    IDLE = "idle"
    BOOKING = "booking"
    PAYMENT = "payment"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


# Allowed moves of the booking workflow; anything else is rejected
TRANSITIONS: dict[WorkflowState, frozenset] = {
    WorkflowState.IDLE: frozenset({WorkflowState.BOOKING}),
    WorkflowState.BOOKING: frozenset({WorkflowState.PAYMENT, WorkflowState.IDLE}),
    WorkflowState.PAYMENT: frozenset({WorkflowState.PROCESSING, WorkflowState.BOOKING, WorkflowState.IDLE}),
    WorkflowState.PROCESSING: frozenset({WorkflowState.SUCCESS, WorkflowState.ERROR, WorkflowState.BOOKING}),
    WorkflowState.ERROR: frozenset({WorkflowState.PAYMENT, WorkflowState.BOOKING, WorkflowState.IDLE}),
    WorkflowState.SUCCESS: frozenset({WorkflowState.IDLE}),
}


class LoginForm(StatesGroup):
    """States for /login."""

    email = State()
    password = State()


class TruckBooking(StatesGroup):
    """FSM states for the truck booking conversation."""

    selecting_driver = State()   # User selecting a truck/driver from list
    pickup_location = State()    # Typing / picking the pickup area
    destination = State()        # Typing / picking the destination area
    pickup_time = State()        # Pickup date and time
    review = State()             # Fare shown, "Continue to Payment"
    customer_name = State()      # Payment step: contact fields
    customer_email = State()
    customer_phone = State()
    payment_confirm = State()    # "Proceed to Payment"
    processing = State()         # Gateway session in flight
    error = State()              # Retry / Cancel
