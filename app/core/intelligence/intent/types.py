"""Intent types for conversation classification."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Intent(str, Enum):
    """Patient intent categories."""

    BOOKING = "booking"                          # Book a new appointment
    CANCEL = "cancel"                            # Cancel an existing appointment
    RESCHEDULE = "reschedule"                    # Move an existing appointment
    PRICE_INQUIRY = "price_inquiry"              # Ask about prices
    APPOINTMENT_INQUIRY = "appointment_inquiry"  # Ask about an existing appointment


class ConfirmationType(str, Enum):
    """Reading of a reply to a yes/no question."""

    YES = "yes"
    NO = "no"
    UNCLEAR = "unclear"


@dataclass
class IntentResult:
    """Result of intent detection.

    An empty intent set is a valid answer: the message carries no new
    intent (typically a reply to the bot's last question).
    """

    intents: frozenset[Intent] = field(default_factory=frozenset)

    # Which detector produced the answer ("claude", "keyword")
    source: str = "keyword"

    # Whether an earlier detector in the chain failed
    fallback_used: bool = False

    # Raw LLM output for debugging
    raw_response: Optional[str] = None

    # Processing time
    processing_time_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.intents

    def has(self, intent: Intent) -> bool:
        return intent in self.intents

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "intents": sorted(i.value for i in self.intents),
            "source": self.source,
            "fallback_used": self.fallback_used,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class DetectionContext:
    """What the detector may know about the conversation so far."""

    recent_history: list[dict] = field(default_factory=list)  # [{"role", "text"}]
    known_intents: list[str] = field(default_factory=list)
    state: Optional[str] = None
