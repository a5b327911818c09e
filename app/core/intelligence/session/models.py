"""
Session data models.

One ConversationSession per conversation identifier (the patient's phone
number). The session keeps copies of slots and bookings as plain records;
the external calendar stays the authoritative store.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from app.core.intelligence.dates.parser import DateTimePreference

from .state import ConversationState, can_transition


class InvalidTransitionError(Exception):
    """Raised when a state change is not allowed by the state machine."""
    pass


class SessionInvariantError(Exception):
    """Raised when a session would be persisted in an illegal shape."""
    pass


class ConfirmationStatus(str, Enum):
    """Status of the currently selected slot."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ProposedSlot:
    """A concrete appointment window on one dentist's calendar."""

    practitioner: str
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {
            "practitioner": self.practitioner,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProposedSlot":
        return cls(
            practitioner=data["practitioner"],
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


@dataclass
class BookingRef:
    """Session-held copy of a booking found on the calendar."""

    practitioner: str
    patient_name: str
    patient_phone: str
    treatment: str
    start: datetime
    end: datetime
    event_id: str
    calendar_ref: str = ""

    def to_dict(self) -> dict:
        return {
            "practitioner": self.practitioner,
            "patient_name": self.patient_name,
            "patient_phone": self.patient_phone,
            "treatment": self.treatment,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "event_id": self.event_id,
            "calendar_ref": self.calendar_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BookingRef":
        return cls(
            practitioner=data["practitioner"],
            patient_name=data.get("patient_name", ""),
            patient_phone=data.get("patient_phone", ""),
            treatment=data.get("treatment", ""),
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            event_id=data["event_id"],
            calendar_ref=data.get("calendar_ref", ""),
        )


@dataclass
class Message:
    """One entry of the conversation history."""

    role: str  # "user" or "assistant"
    text: str
    timestamp: datetime


@dataclass
class ConversationSession:
    """
    Per-conversation mutable state.

    ``state`` is the explicit tag of the booking state machine. The other
    fields are data collected along the way; they never decide on their own
    which question a yes/no answers.
    """

    # Identifiers
    conversation_id: str
    contact_phone: str = ""

    # State machine
    state: ConversationState = ConversationState.IDLE
    intents: list[str] = field(default_factory=list)  # ordered, no duplicates

    # Collected booking data
    patient_name: Optional[str] = None
    treatment: Optional[str] = None
    practitioner: Optional[str] = None
    duration_minutes: Optional[int] = None
    tooth_count: Optional[int] = None
    preference: Optional[DateTimePreference] = None  # resolved when first mentioned

    # Slot selection
    selected_slot: Optional[ProposedSlot] = None
    confirmation_status: Optional[ConfirmationStatus] = None
    candidate_slots: list[ProposedSlot] = field(default_factory=list)
    event_id: Optional[str] = None

    # Cancel / reschedule
    existing_booking: Optional[BookingRef] = None
    existing_bookings: list[BookingRef] = field(default_factory=list)
    excluded_slot: Optional[ProposedSlot] = None

    # History
    messages: list[Message] = field(default_factory=list)
    max_messages: int = 50

    # Metadata
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)

    # === State machine ===

    def transition(self, new_state: ConversationState) -> None:
        """Move to a new state, refusing edges the state machine forbids."""
        if not can_transition(self.state, new_state):
            raise InvalidTransitionError(
                f"Invalid transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def add_intent(self, intent: str) -> None:
        if intent not in self.intents:
            self.intents.append(intent)

    def drop_intent(self, intent: str) -> None:
        if intent in self.intents:
            self.intents.remove(intent)

    def has_intent(self, intent: str) -> bool:
        return intent in self.intents

    # === Slot handling ===

    def propose(self, slot: ProposedSlot) -> None:
        """Hold a slot pending the patient's confirmation."""
        self.selected_slot = slot
        self.confirmation_status = ConfirmationStatus.PENDING

    def clear_selection(self) -> None:
        self.selected_slot = None
        self.confirmation_status = None

    def confirm(self, event_id: str) -> None:
        """Mark the pending slot as booked under an external event id."""
        if self.selected_slot is None:
            raise SessionInvariantError("Cannot confirm without a selected slot")
        if not event_id:
            raise SessionInvariantError("Cannot confirm without an external booking reference")
        self.event_id = event_id
        self.confirmation_status = ConfirmationStatus.CONFIRMED

    def reset_booking(self) -> None:
        """Forget collected booking data so a new booking can start."""
        self.treatment = None
        self.practitioner = None
        self.duration_minutes = None
        self.tooth_count = None
        self.preference = None
        self.candidate_slots = []
        self.event_id = None
        self.clear_selection()

    def validate(self) -> None:
        """Check session invariants before persisting."""
        if self.confirmation_status == ConfirmationStatus.CONFIRMED:
            if self.selected_slot is None or not self.event_id:
                raise SessionInvariantError(
                    f"Session {self.conversation_id} confirmed without slot or booking reference"
                )
        if self.state == ConversationState.SLOT_PROPOSED:
            if self.confirmation_status != ConfirmationStatus.PENDING or self.selected_slot is None:
                raise SessionInvariantError(
                    f"Session {self.conversation_id} proposes a slot it does not hold"
                )

    # === History ===

    def add_message(self, role: str, text: str, timestamp: Optional[datetime] = None) -> None:
        self.messages.append(Message(role=role, text=text, timestamp=timestamp or datetime.now()))
        self._trim()

    def recent_history(self, limit: int = 6) -> list[dict]:
        """Last few messages as role/text dicts, oldest first."""
        return [{"role": m.role, "text": m.text} for m in self.messages[-limit:]]

    def _trim(self) -> None:
        """Keep history within configured limits."""
        if len(self.messages) > self.max_messages:
            self.messages = self.messages[-self.max_messages:]

    # === Serialization ===

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "contact_phone": self.contact_phone,
            "state": self.state.value,
            "intents": list(self.intents),
            "patient_name": self.patient_name,
            "treatment": self.treatment,
            "practitioner": self.practitioner,
            "duration_minutes": self.duration_minutes,
            "tooth_count": self.tooth_count,
            "preference": self.preference.to_dict() if self.preference else None,
            "selected_slot": self.selected_slot.to_dict() if self.selected_slot else None,
            "confirmation_status": (
                self.confirmation_status.value if self.confirmation_status else None
            ),
            "candidate_slots": [s.to_dict() for s in self.candidate_slots],
            "event_id": self.event_id,
            "existing_booking": self.existing_booking.to_dict() if self.existing_booking else None,
            "existing_bookings": [b.to_dict() for b in self.existing_bookings],
            "excluded_slot": self.excluded_slot.to_dict() if self.excluded_slot else None,
            "messages": [
                {"role": m.role, "text": m.text, "timestamp": m.timestamp.isoformat()}
                for m in self.messages
            ],
            "max_messages": self.max_messages,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationSession":
        """Create from a to_dict() payload."""
        status = data.get("confirmation_status")
        return cls(
            conversation_id=data["conversation_id"],
            contact_phone=data.get("contact_phone", ""),
            state=ConversationState(data.get("state", ConversationState.IDLE.value)),
            intents=list(data.get("intents", [])),
            patient_name=data.get("patient_name"),
            treatment=data.get("treatment"),
            practitioner=data.get("practitioner"),
            duration_minutes=data.get("duration_minutes"),
            tooth_count=data.get("tooth_count"),
            preference=(
                DateTimePreference.from_dict(data["preference"]) if data.get("preference") else None
            ),
            selected_slot=(
                ProposedSlot.from_dict(data["selected_slot"]) if data.get("selected_slot") else None
            ),
            confirmation_status=ConfirmationStatus(status) if status else None,
            candidate_slots=[ProposedSlot.from_dict(s) for s in data.get("candidate_slots", [])],
            event_id=data.get("event_id"),
            existing_booking=(
                BookingRef.from_dict(data["existing_booking"])
                if data.get("existing_booking") else None
            ),
            existing_bookings=[BookingRef.from_dict(b) for b in data.get("existing_bookings", [])],
            excluded_slot=(
                ProposedSlot.from_dict(data["excluded_slot"]) if data.get("excluded_slot") else None
            ),
            messages=[
                Message(role=m["role"], text=m["text"], timestamp=datetime.fromisoformat(m["timestamp"]))
                for m in data.get("messages", [])
            ],
            max_messages=data.get("max_messages", 50),
            created_at=_dt(data.get("created_at")) or datetime.now(),
            last_activity=_dt(data.get("last_activity")) or datetime.now(),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "ConversationSession":
        """Create from JSON string."""
        return cls.from_dict(json.loads(json_str))
