"""
Intelligence Layer Module

Understands patient messages and keeps conversation state:
intent detection, entity extraction, date/time preference parsing, and
session management.

Usage:
    from app.core.intelligence import (
        detect_intents,
        extract_slots,
        parse_preference,
        get_session_manager,
    )

    # Detect intents
    result = await detect_intents("I'd like to book a cleaning, how much is it?")
    print(result.intents)  # {Intent.BOOKING, Intent.PRICE_INQUIRY}

    # Extract entities
    slots = extract_slots("I'm Jane, 2 fillings with Dr GeneralA next Tuesday at 10am")
    print(slots.tooth_count)  # 2

    # Parse a preference
    pref = parse_preference("next Tuesday at 10am", datetime.now())

    # Session management
    manager = get_session_manager()
    session = await manager.get("+15551234567")
"""

# Intent Detection
from app.core.intelligence.intent.types import (
    ConfirmationType,
    DetectionContext,
    Intent,
    IntentResult,
)
from app.core.intelligence.intent.keywords import KeywordIntentDetector, detect_confirmation
from app.core.intelligence.intent.classifier import ClaudeIntentDetector, IntentDetectionError
from app.core.intelligence.intent.chain import (
    IntentDetectionChain,
    build_default_chain,
    detect_intents,
    get_intent_detector,
)

# Entity Extraction
from app.core.intelligence.slots.types import ExtractedSlots, Treatment
from app.core.intelligence.slots.extractor import (
    SlotExtractor,
    get_slot_extractor,
    extract_slots,
)

# Date/Time Preferences
from app.core.intelligence.dates.parser import DateTimePreference, TimeOfDay, parse_preference
from app.core.intelligence.dates.matcher import matches

# Session Management
from app.core.intelligence.session.state import (
    ConversationState,
    can_transition,
    get_valid_transitions,
    is_awaiting_decision,
    is_collecting_state,
)
from app.core.intelligence.session.models import (
    BookingRef,
    ConfirmationStatus,
    ConversationSession,
    InvalidTransitionError,
    ProposedSlot,
    SessionInvariantError,
)
from app.core.intelligence.session.manager import SessionManager, get_session_manager
from app.core.intelligence.session.sweeper import SessionSweeper

__all__ = [
    # Intent
    "ConfirmationType",
    "DetectionContext",
    "Intent",
    "IntentResult",
    "KeywordIntentDetector",
    "detect_confirmation",
    "ClaudeIntentDetector",
    "IntentDetectionError",
    "IntentDetectionChain",
    "build_default_chain",
    "detect_intents",
    "get_intent_detector",
    # Slots
    "ExtractedSlots",
    "Treatment",
    "SlotExtractor",
    "get_slot_extractor",
    "extract_slots",
    # Dates
    "DateTimePreference",
    "TimeOfDay",
    "parse_preference",
    "matches",
    # Session State
    "ConversationState",
    "can_transition",
    "get_valid_transitions",
    "is_awaiting_decision",
    "is_collecting_state",
    # Session Data
    "BookingRef",
    "ConfirmationStatus",
    "ConversationSession",
    "InvalidTransitionError",
    "ProposedSlot",
    "SessionInvariantError",
    "SessionManager",
    "get_session_manager",
    "SessionSweeper",
]
