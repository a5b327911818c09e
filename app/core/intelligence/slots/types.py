"""Entity types extracted from patient messages."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Treatment(str, Enum):
    """Treatments the clinic books."""

    CONSULTATION = "Consultation"
    CLEANING = "Cleaning"
    FILLING = "Filling"
    BRACES_MAINTENANCE = "Braces Maintenance"
    OTHER = "Other"


# Validation limits
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
MIN_TEETH = 1
MAX_TEETH = 32
DATE_TEXT_MIN_LENGTH = 3
DATE_TEXT_MAX_LENGTH = 200

_NAME_RE = re.compile(r"^[A-Za-z\s'-]+$")


def is_valid_name(name: Optional[str]) -> bool:
    """Letters, spaces, apostrophes and hyphens; 2-100 characters."""
    if not name:
        return False
    name = name.strip()
    return (
        NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH
        and bool(_NAME_RE.match(name))
    )


def is_valid_tooth_count(count: Optional[int]) -> bool:
    return count is not None and MIN_TEETH <= count <= MAX_TEETH


def is_valid_date_text(text: Optional[str]) -> bool:
    if not text:
        return False
    return DATE_TEXT_MIN_LENGTH <= len(text.strip()) <= DATE_TEXT_MAX_LENGTH


@dataclass
class ExtractedSlots:
    """Entities extracted from a single message."""

    patient_name: Optional[str] = None
    treatment: Optional[Treatment] = None
    practitioner: Optional[str] = None
    tooth_count: Optional[int] = None
    date_text: Optional[str] = None  # raw text carrying a date/time preference

    # Session commands
    end_session: bool = False

    def has_any(self) -> bool:
        """Check if any entity was extracted."""
        return any([
            self.patient_name,
            self.treatment,
            self.practitioner,
            self.tooth_count,
            self.date_text,
        ])

    def to_dict(self) -> dict:
        """Convert to dict, excluding None values."""
        result: dict = {}
        if self.patient_name:
            result["patient_name"] = self.patient_name
        if self.treatment:
            result["treatment"] = self.treatment.value
        if self.practitioner:
            result["practitioner"] = self.practitioner
        if self.tooth_count is not None:
            result["tooth_count"] = self.tooth_count
        if self.date_text:
            result["date_text"] = self.date_text
        if self.end_session:
            result["end_session"] = True
        return result
