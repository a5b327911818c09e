"""
Keyword-based intent and confirmation detection.

Deterministic fallback used when the LLM classifier is unavailable, and
the only reader of yes/no replies.
"""

import re
from typing import Optional

from .types import ConfirmationType, DetectionContext, Intent, IntentResult

AFFIRMATIVE_WORDS = [
    "yes", "ok", "okay", "sure", "confirm", "confirmed", "yep", "yeah",
    "alright", "sounds good", "that works", "perfect", "great",
]
NEGATIVE_WORDS = [
    "no", "nope", "cancel", "change", "different", "not", "don't", "dont",
    "decline",
]


def _word_pattern(words: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(w).replace(r"\ ", r"\s+") for w in words)
    return re.compile(rf"(?<![\w'])(?:{alternatives})(?![\w'])")


_AFFIRMATIVE_RE = _word_pattern(AFFIRMATIVE_WORDS)
_NEGATIVE_RE = _word_pattern(NEGATIVE_WORDS)
# While a cancellation awaits confirmation, "cancel" agrees rather than declines
_NEGATIVE_CANCEL_PENDING_RE = _word_pattern([w for w in NEGATIVE_WORDS if w != "cancel"])
_NEGATION_RE = re.compile(r"(?<![\w'])(?:don't|dont|do not|not|never)(?![\w'])")
_BARE_ACK_RE = re.compile(r"^\s*(?:yes|ok|okay|sure)\W*$")

_CANCEL_RE = re.compile(r"\bcancel(?:lation|led|ling)?\b")
_RESCHEDULE_RE = re.compile(
    r"\bre-?schedule\b|\b(?:change|move)\s+(?:my\s+|the\s+)?(?:appointment|booking)\b"
)
_PRICE_RE = re.compile(r"\b(?:price|prices|pricing|cost|costs|fee|fees)\b|\bhow\s+much\b")
_BOOKING_RE = re.compile(r"\b(?:book|booking|appointment|schedule)\b")
_INQUIRY_RES = [
    re.compile(r"\bcheck\b.*\bappointment"),
    re.compile(r"\bwhen\b.*\bappointment"),
    re.compile(r"\bwhat\s+time\b.*\bappointment"),
    re.compile(r"\bmy\s+appointment\b.*\b(?:when|time|details)\b"),
    re.compile(r"\bdo\s+i\s+have\s+(?:an?\s+)?appointment"),
]


def detect_confirmation(message: str, cancellation_pending: bool = False) -> ConfirmationType:
    """
    Read a reply to a yes/no question.

    A negative word anywhere wins; an affirmative counts only when no
    negative word is present. With ``cancellation_pending`` the word
    "cancel" itself is read as agreement ("yes, cancel it").
    """
    msg = message.lower().strip()
    negative_re = _NEGATIVE_CANCEL_PENDING_RE if cancellation_pending else _NEGATIVE_RE
    if negative_re.search(msg):
        return ConfirmationType.NO
    if _AFFIRMATIVE_RE.search(msg):
        return ConfirmationType.YES
    if cancellation_pending and _CANCEL_RE.search(msg):
        return ConfirmationType.YES
    return ConfirmationType.UNCLEAR


class KeywordIntentDetector:
    """Rule-based intent detection."""

    name = "keyword"

    async def detect(self, message: str, context: Optional[DetectionContext] = None) -> IntentResult:
        return IntentResult(intents=self.detect_sync(message), source=self.name)

    def detect_sync(self, message: str) -> frozenset[Intent]:
        msg = message.lower().strip()
        negated = bool(_NEGATION_RE.search(msg))
        intents: set[Intent] = set()

        if _CANCEL_RE.search(msg) and not negated:
            intents.add(Intent.CANCEL)
        if _RESCHEDULE_RE.search(msg) and not negated:
            intents.add(Intent.RESCHEDULE)
            # "reschedule" is not also a cancellation
            intents.discard(Intent.CANCEL)
        if _PRICE_RE.search(msg) and not negated:
            intents.add(Intent.PRICE_INQUIRY)

        is_inquiry = any(p.search(msg) for p in _INQUIRY_RES) and not re.search(r"\bbook", msg)
        if is_inquiry:
            intents.add(Intent.APPOINTMENT_INQUIRY)
            return frozenset(intents - {Intent.CANCEL, Intent.RESCHEDULE})

        if (
            _BOOKING_RE.search(msg)
            and not negated
            and not _BARE_ACK_RE.match(msg)
            and not intents & {Intent.CANCEL, Intent.RESCHEDULE}
        ):
            intents.add(Intent.BOOKING)

        return frozenset(intents)
