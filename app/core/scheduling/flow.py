"""
Conversation Flow Manager.

Decides what a patient's message means for the conversation, given the
session's current state tag, the detected intents and the extracted
entities. Decisions only; the engine performs calendar calls and
mutates the session.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from app.core.intelligence.dates.matcher import matches
from app.core.intelligence.dates.parser import parse_preference
from app.core.intelligence.intent.keywords import detect_confirmation
from app.core.intelligence.intent.types import ConfirmationType, Intent
from app.core.intelligence.session.models import BookingRef, ConversationSession
from app.core.intelligence.session.state import ConversationState, is_collecting_state
from app.core.intelligence.slots.types import ExtractedSlots

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What the engine should do with a turn."""

    END_SESSION = "end_session"

    # Booking
    CONTINUE_BOOKING = "continue_booking"  # collect missing data or search
    BOOK = "book"                          # patient accepted the proposed slot
    DECLINE_SLOT = "decline_slot"
    REASK_SLOT = "reask_slot"

    # Cancellation
    LOOKUP_CANCEL = "lookup_cancel"
    CANCEL = "cancel"
    KEEP_BOOKING = "keep_booking"
    REASK_CANCEL = "reask_cancel"

    # Reschedule
    LOOKUP_RESCHEDULE = "lookup_reschedule"
    SELECT_BOOKING = "select_booking"
    RESCHEDULE = "reschedule"
    KEEP_RESCHEDULE = "keep_reschedule"
    REASK_RESCHEDULE = "reask_reschedule"

    # Nothing to advance (greeting, or add-ons only)
    RESPOND = "respond"


# Actions after which collected booking data from the message is merged
BOOKING_ACTIONS = {
    Action.CONTINUE_BOOKING,
    Action.BOOK,
    Action.DECLINE_SLOT,
    Action.REASK_SLOT,
}


@dataclass
class FlowAction:
    """Action determined by the flow manager."""

    action: Action
    search_again: bool = False       # DECLINE_SLOT: the reply carries a new preference
    selection: Optional[int] = None  # SELECT_BOOKING: index into existing_bookings
    with_pricing: bool = False       # append pricing information
    with_inquiry: bool = False       # append the patient's appointment details


_ORDINALS = {
    "first": 1, "1st": 1, "second": 2, "2nd": 2, "third": 3, "3rd": 3,
    "fourth": 4, "4th": 4, "fifth": 5, "5th": 5, "last": -1,
}
_NUMBER_RE = re.compile(r"(?<![\d/:.-])#?(\d{1,2})(?![\d/:.-]|\s*(?:am|pm|a\.m|p\.m|o'clock))", re.IGNORECASE)
_ORDINAL_RE = re.compile(r"\b(" + "|".join(_ORDINALS) + r")\b", re.IGNORECASE)


def select_booking(
    message: str,
    bookings: Sequence[BookingRef],
    reference: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> Optional[int]:
    """
    Pick one of several listed bookings from the patient's reply.

    The reply may name a date and/or time ("the one on 1/16 at 10am") or
    a position in the list ("2", "the second one"). Returns the index of
    the chosen booking, or None when the reply does not identify one.
    """
    if not bookings:
        return None

    preference = parse_preference(message, reference or datetime.now(), timezone_name)
    if not preference.is_empty:
        for index, booking in enumerate(bookings):
            if matches(booking.start, preference):
                return index
        return None

    ordinal = _ORDINAL_RE.search(message)
    if ordinal:
        position = _ORDINALS[ordinal.group(1).lower()]
        position = len(bookings) if position == -1 else position
    else:
        number = _NUMBER_RE.search(message)
        if not number:
            return None
        position = int(number.group(1))

    if 1 <= position <= len(bookings):
        return position - 1
    return None


def awaiting_field(state: ConversationState) -> Optional[str]:
    """What a bare answer in this state is expected to be."""
    if state == ConversationState.COLLECTING_NAME:
        return "name"
    if state == ConversationState.COLLECTING_TOOTH_COUNT:
        return "tooth_count"
    return None


class ConversationFlow:
    """
    Turn-level decisions of the booking state machine.

    A pending decision (proposed slot, cancellation, reschedule) is always
    resolved against the current state tag first; new intents only start
    a flow when nothing is pending.
    """

    def decide(
        self,
        session: ConversationSession,
        intents: frozenset[Intent],
        slots: ExtractedSlots,
        message: str,
        reference: Optional[datetime] = None,
        timezone_name: str = "UTC",
    ) -> FlowAction:
        """Determine the action for one patient message.

        Args:
            session: Current session (not modified)
            intents: Intents detected in the message
            slots: Entities extracted from the message
            message: Raw patient message
            reference: Clinic wall-clock "now" for date parsing

        Returns:
            FlowAction for the engine to execute
        """
        if slots.end_session:
            return FlowAction(Action.END_SESSION)

        action = self._decide(session, intents, slots, message, reference, timezone_name)
        action.with_pricing = Intent.PRICE_INQUIRY in intents
        action.with_inquiry = Intent.APPOINTMENT_INQUIRY in intents
        logger.debug(f"{session.conversation_id}: {session.state.value} -> {action.action.value}")
        return action

    def _decide(
        self,
        session: ConversationSession,
        intents: frozenset[Intent],
        slots: ExtractedSlots,
        message: str,
        reference: Optional[datetime],
        timezone_name: str,
    ) -> FlowAction:
        state = session.state

        if state == ConversationState.SLOT_PROPOSED:
            return self._on_slot_proposed(slots, message)

        if state == ConversationState.CANCEL_CONFIRM_PENDING:
            answer = detect_confirmation(message, cancellation_pending=True)
            if answer == ConfirmationType.YES:
                return FlowAction(Action.CANCEL)
            if answer == ConfirmationType.NO:
                return FlowAction(Action.KEEP_BOOKING)
            return FlowAction(Action.REASK_CANCEL)

        if state == ConversationState.RESCHEDULE_SELECT_PENDING:
            index = select_booking(message, session.existing_bookings, reference, timezone_name)
            return FlowAction(Action.SELECT_BOOKING, selection=index)

        if state == ConversationState.RESCHEDULE_CONFIRM_PENDING:
            answer = detect_confirmation(message)
            if answer == ConfirmationType.YES:
                return FlowAction(Action.RESCHEDULE)
            if answer == ConfirmationType.NO:
                return FlowAction(Action.KEEP_RESCHEDULE)
            return FlowAction(Action.REASK_RESCHEDULE)

        # Nothing pending: new intents may start a flow
        if Intent.CANCEL in intents:
            return FlowAction(Action.LOOKUP_CANCEL)
        if Intent.RESCHEDULE in intents:
            return FlowAction(Action.LOOKUP_RESCHEDULE)
        if (
            Intent.BOOKING in intents
            or session.has_intent(Intent.BOOKING.value)
            or is_collecting_state(state)
        ):
            return FlowAction(Action.CONTINUE_BOOKING)

        # A treatment named on its own ("I need a cleaning") is a booking request
        if slots.treatment is not None and not intents:
            return FlowAction(Action.CONTINUE_BOOKING)

        # Bare "yes" at the start of a conversation accepts the offer to book
        if (
            state == ConversationState.IDLE
            and not intents
            and not session.intents
            and detect_confirmation(message) == ConfirmationType.YES
        ):
            return FlowAction(Action.CONTINUE_BOOKING)

        return FlowAction(Action.RESPOND)

    def _on_slot_proposed(self, slots: ExtractedSlots, message: str) -> FlowAction:
        """Read the reply to a proposed slot.

        Never searches again unless the reply declines the slot or brings
        a new preference.
        """
        has_new_preference = bool(slots.date_text or slots.practitioner)
        answer = detect_confirmation(message)

        if answer == ConfirmationType.YES:
            return FlowAction(Action.BOOK)
        if answer == ConfirmationType.NO:
            return FlowAction(Action.DECLINE_SLOT, search_again=has_new_preference)
        if has_new_preference:
            return FlowAction(Action.DECLINE_SLOT, search_again=True)
        return FlowAction(Action.REASK_SLOT)


def merge_slots(
    session: ConversationSession,
    slots: ExtractedSlots,
    booking: bool = True,
    reference: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> None:
    """
    Copy extracted entities into the session.

    With ``booking=False`` only the patient's name is taken; dates and
    treatments mentioned outside a booking flow are not remembered.
    Date text is resolved against ``reference`` right away, so "tomorrow"
    keeps meaning the day after the message was sent.
    """
    if slots.patient_name:
        session.patient_name = slots.patient_name
    if not booking:
        return

    if slots.treatment is not None:
        if session.treatment != slots.treatment.value:
            # A different treatment invalidates the duration inputs
            session.tooth_count = None
            session.duration_minutes = None
        session.treatment = slots.treatment.value
    if slots.practitioner:
        session.practitioner = slots.practitioner
    if slots.tooth_count is not None:
        session.tooth_count = slots.tooth_count
    if slots.date_text:
        session.preference = parse_preference(slots.date_text, reference or datetime.now(), timezone_name)


# Singleton
_flow: Optional[ConversationFlow] = None


def get_conversation_flow() -> ConversationFlow:
    """Get singleton ConversationFlow."""
    global _flow
    if _flow is None:
        _flow = ConversationFlow()
    return _flow
