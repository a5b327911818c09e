"""Conversation state machine."""

from enum import Enum
from typing import Set


class ConversationState(str, Enum):
    """Where a conversation currently stands.

    The tag is authoritative: a yes/no reply is always interpreted against
    the decision this state is waiting on.
    """

    # Initial
    IDLE = "idle"

    # Booking: information gathering
    COLLECTING_TREATMENT = "collecting_treatment"
    COLLECTING_PRACTITIONER = "collecting_practitioner"
    COLLECTING_PREFERENCES = "collecting_preferences"
    COLLECTING_TOOTH_COUNT = "collecting_tooth_count"
    COLLECTING_NAME = "collecting_name"

    # Booking: confirmation
    SLOT_PROPOSED = "slot_proposed"
    CONFIRMED = "confirmed"

    # Cancellation
    CANCEL_LOOKUP_PENDING = "cancel_lookup_pending"
    CANCEL_CONFIRM_PENDING = "cancel_confirm_pending"
    CANCELLED = "cancelled"

    # Reschedule
    RESCHEDULE_SELECT_PENDING = "reschedule_select_pending"
    RESCHEDULE_CONFIRM_PENDING = "reschedule_confirm_pending"


_COLLECTING = {
    ConversationState.COLLECTING_TREATMENT,
    ConversationState.COLLECTING_PRACTITIONER,
    ConversationState.COLLECTING_PREFERENCES,
    ConversationState.COLLECTING_TOOTH_COUNT,
    ConversationState.COLLECTING_NAME,
}

# States from which a new flow (booking, cancel, reschedule) may start
_ENTRY_POINTS = {
    ConversationState.IDLE,
    ConversationState.SLOT_PROPOSED,
    ConversationState.CANCEL_LOOKUP_PENDING,
    ConversationState.RESCHEDULE_SELECT_PENDING,
    ConversationState.RESCHEDULE_CONFIRM_PENDING,
}

_OPEN = _COLLECTING | _ENTRY_POINTS

# Valid state transitions
VALID_TRANSITIONS: dict[ConversationState, Set[ConversationState]] = {
    ConversationState.IDLE: set(_OPEN),
    **{state: set(_OPEN) for state in _COLLECTING},
    ConversationState.SLOT_PROPOSED: _COLLECTING | {
        ConversationState.CONFIRMED,
        ConversationState.SLOT_PROPOSED,  # alternative offered
        ConversationState.IDLE,
    },
    ConversationState.CONFIRMED: set(_OPEN),
    ConversationState.CANCEL_LOOKUP_PENDING: {
        ConversationState.CANCEL_CONFIRM_PENDING,
        ConversationState.IDLE,
    },
    ConversationState.CANCEL_CONFIRM_PENDING: {
        ConversationState.CANCELLED,
        ConversationState.IDLE,
        ConversationState.CANCEL_CONFIRM_PENDING,
    },
    ConversationState.CANCELLED: set(_OPEN),
    ConversationState.RESCHEDULE_SELECT_PENDING: {
        ConversationState.RESCHEDULE_CONFIRM_PENDING,
        ConversationState.RESCHEDULE_SELECT_PENDING,
        ConversationState.IDLE,
    },
    ConversationState.RESCHEDULE_CONFIRM_PENDING: _COLLECTING | {
        ConversationState.RESCHEDULE_CONFIRM_PENDING,
        ConversationState.SLOT_PROPOSED,
        ConversationState.IDLE,
    },
}


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    """Check if a state transition is valid."""
    if from_state == to_state and from_state in _COLLECTING | {ConversationState.IDLE}:
        return True
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def get_valid_transitions(state: ConversationState) -> Set[ConversationState]:
    """Get all valid transitions from a state."""
    return VALID_TRANSITIONS.get(state, set())


def is_awaiting_decision(state: ConversationState) -> bool:
    """Check if the conversation is waiting on a yes/no or a selection."""
    return state in {
        ConversationState.SLOT_PROPOSED,
        ConversationState.CANCEL_CONFIRM_PENDING,
        ConversationState.RESCHEDULE_SELECT_PENDING,
        ConversationState.RESCHEDULE_CONFIRM_PENDING,
    }


def is_collecting_state(state: ConversationState) -> bool:
    """Check if state is a data collection state."""
    return state in _COLLECTING
