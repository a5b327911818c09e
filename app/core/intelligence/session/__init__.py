"""Conversation session state, storage and expiry."""

from .state import (
    ConversationState,
    can_transition,
    get_valid_transitions,
    is_awaiting_decision,
    is_collecting_state,
)
from .models import (
    BookingRef,
    ConfirmationStatus,
    ConversationSession,
    InvalidTransitionError,
    Message,
    ProposedSlot,
    SessionInvariantError,
)
from .manager import (
    MemorySessionBackend,
    RedisSessionBackend,
    SessionManager,
    get_session_manager,
)
from .sweeper import SessionSweeper

__all__ = [
    # State
    "ConversationState",
    "can_transition",
    "get_valid_transitions",
    "is_awaiting_decision",
    "is_collecting_state",
    # Models
    "BookingRef",
    "ConfirmationStatus",
    "ConversationSession",
    "InvalidTransitionError",
    "Message",
    "ProposedSlot",
    "SessionInvariantError",
    # Manager
    "MemorySessionBackend",
    "RedisSessionBackend",
    "SessionManager",
    "get_session_manager",
    "SessionSweeper",
]
