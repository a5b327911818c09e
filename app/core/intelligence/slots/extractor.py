"""
Deterministic entity extraction.

Extracts: patient name, treatment, dentist, tooth count, date/time text,
and session commands. What the bot is currently waiting for ("awaiting")
lets bare answers such as "Jane Doe" or "3" be understood.
"""

import logging
import re
from datetime import datetime
from typing import Optional, Sequence

from app.config import settings
from app.core.intelligence.dates.parser import parse_preference
from .types import (
    ExtractedSlots,
    Treatment,
    is_valid_date_text,
    is_valid_name,
    is_valid_tooth_count,
)

logger = logging.getLogger(__name__)


END_SESSION_RE = re.compile(
    r"\b(?:(?:end|clear|reset)\s+(?:the\s+|my\s+)?session|start\s+over|restart|new\s+session)\b"
)

TREATMENT_KEYWORDS: list[tuple[re.Pattern, Treatment]] = [
    (re.compile(r"\bbrace"), Treatment.BRACES_MAINTENANCE),
    (re.compile(r"\bclean"), Treatment.CLEANING),
    (re.compile(r"\b(?:fill|cavit)"), Treatment.FILLING),
    (re.compile(r"\b(?:consult|check[\s-]?up)"), Treatment.CONSULTATION),
]

_EXPLICIT_NAME_RE = re.compile(
    r"\b(?:my name is|my name's|name is|call me)\s+([a-z][a-z'\-]*(?:\s+[a-z][a-z'\-]*){0,3})",
    re.IGNORECASE,
)
_INTRO_NAME_RE = re.compile(
    r"\b(?:[Ii] am|[Ii]'m|[Tt]his is)\s+([A-Z][a-zA-Z'\-]+(?:\s+[A-Z][a-zA-Z'\-]+){0,3})"
)
_NAME_STOP_WORDS = {
    "and", "i", "i'd", "i'm", "want", "would", "need", "like", "for", "at", "on",
    "please", "to", "the", "a", "an", "with", "looking", "calling", "here",
    "today", "tomorrow", "next", "this",
}

# Replies that look like names but are not
_NOT_NAMES = {
    "yes", "no", "ok", "okay", "sure", "yep", "yeah", "nope", "hi", "hello",
    "hey", "thanks", "thank you", "great", "perfect", "alright", "fine",
}

_WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "a single": 1,
}
_NUMBER = r"(\d{1,2}|" + "|".join(sorted(_WORD_NUMBERS, key=len, reverse=True)) + r")"
_TEETH_RE = re.compile(rf"\b{_NUMBER}\s+(?:teeth|tooth|fillings?|cavities|cavity)\b")
_BARE_NUMBER_RE = re.compile(rf"^\s*(?:just\s+)?{_NUMBER}\b")


def _clean_name(raw: str) -> Optional[str]:
    """Cut a captured name at the first filler word and title-case it."""
    words = []
    for word in raw.split():
        if word.lower() in _NAME_STOP_WORDS:
            break
        words.append(word)
    name = " ".join(words).strip(" '-")
    if not is_valid_name(name):
        return None
    return name.title() if name.islower() else name


def _to_int(token: str) -> Optional[int]:
    token = token.lower()
    if token.isdigit():
        return int(token)
    return _WORD_NUMBERS.get(token)


def _practitioner_pattern(name: str) -> re.Pattern:
    """Match "Dr BracesA", "dr. bracesa", "doctor braces a" and "BracesA"."""
    core = re.sub(r"^(?:dr\.?|doctor)\s*", "", name.strip(), flags=re.IGNORECASE)
    letters = [re.escape(c) for c in core.replace(" ", "")]
    return re.compile(r"\b" + r"\s*".join(letters) + r"\b", re.IGNORECASE)


class SlotExtractor:
    """Rule-based extraction of booking entities from a message."""

    def __init__(self, practitioners: Optional[Sequence[str]] = None):
        """Initialize extractor.

        Args:
            practitioners: Dentist names to recognize (defaults to settings)
        """
        names = list(practitioners) if practitioners is not None else settings.all_dentists
        self._practitioners = [(name, _practitioner_pattern(name)) for name in names]

    def extract(self, message: str, awaiting: Optional[str] = None) -> ExtractedSlots:
        """
        Extract entities from a patient message.

        Args:
            message: Patient's message
            awaiting: What the bot last asked for ("name", "tooth_count", ...)

        Returns:
            ExtractedSlots (fields left None when not found)
        """
        text = message.strip()
        lower = text.lower()
        slots = ExtractedSlots()

        if not text:
            return slots

        slots.end_session = bool(END_SESSION_RE.search(lower))
        slots.treatment = self.extract_treatment(lower)
        slots.practitioner = self.extract_practitioner(text)
        slots.tooth_count = self.extract_tooth_count(lower, bare=awaiting == "tooth_count")
        slots.patient_name = self.extract_name(text, bare=awaiting == "name")

        if is_valid_date_text(text) and not parse_preference(text, datetime.now()).is_empty:
            slots.date_text = text

        logger.debug(f"Extracted slots: {slots.to_dict()}")
        return slots

    def extract_treatment(self, lower: str) -> Optional[Treatment]:
        for pattern, treatment in TREATMENT_KEYWORDS:
            if pattern.search(lower):
                return treatment
        return None

    def extract_practitioner(self, text: str) -> Optional[str]:
        for name, pattern in self._practitioners:
            if pattern.search(text):
                return name
        return None

    def extract_tooth_count(self, lower: str, bare: bool = False) -> Optional[int]:
        match = _TEETH_RE.search(lower)
        if match is None and bare:
            match = _BARE_NUMBER_RE.search(lower)
        if match is None:
            return None
        count = _to_int(match.group(1))
        return count if is_valid_tooth_count(count) else None

    def extract_name(self, text: str, bare: bool = False) -> Optional[str]:
        match = _EXPLICIT_NAME_RE.search(text) or _INTRO_NAME_RE.search(text)
        if match:
            return _clean_name(match.group(1))

        if bare:
            candidate = text.strip().rstrip(".!")
            if (
                candidate.lower() not in _NOT_NAMES
                and len(candidate.split()) <= 4
                and not self.extract_treatment(candidate.lower())
            ):
                return _clean_name(candidate)

        return None


# Singleton
_extractor: Optional[SlotExtractor] = None


def get_slot_extractor() -> SlotExtractor:
    """Get singleton SlotExtractor."""
    global _extractor
    if _extractor is None:
        _extractor = SlotExtractor()
    return _extractor


def extract_slots(message: str, awaiting: Optional[str] = None) -> ExtractedSlots:
    """Convenience function to extract slots."""
    return get_slot_extractor().extract(message, awaiting=awaiting)
