"""
Date/time preference parsing.

Turns free text such as "next Tuesday at 2pm", "tomorrow around 10" or
"21st of July" into a DateTimePreference. Either dimension may stay empty.

Date rules are tried in priority order and the first match wins:

1. today / tomorrow
2. next week + weekday ("next week Friday", "Friday next week")
3. next + weekday
4. this + weekday (today counts)
5. bare weekday (strictly after today)
6. "next week" alone (reference + 7 days)
7. month names ("July 21st", "21st of July", "July 21, 2024")
8. numeric dates (MM/DD, YYYY-MM-DD)

Time rules are independent: H:MM am/pm, H am/pm, H o'clock, and finally a
bare hour that follows a time-context word ("at 10", "around 3").
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


WEEKDAYS: dict[str, int] = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tues": 1, "tue": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thurs": 3, "thur": 3, "thu": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

MONTHS: dict[str, int] = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}


def _alternation(words: dict[str, int]) -> str:
    # Longest first so "tues" wins over "tue"
    return "|".join(sorted(words, key=len, reverse=True))


_DAY = _alternation(WEEKDAYS)
_MONTH = _alternation(MONTHS)
_ORDINAL = r"(?:st|nd|rd|th)?"

_TODAY_RE = re.compile(r"\btoday\b")
_TOMORROW_RE = re.compile(r"\btomorrow\b")
_NEXT_WEEK_RE = re.compile(r"\bnext\s+week\b")
_NEXT_WEEK_DAY_RE = re.compile(
    rf"\bnext\s+week\s+(?:on\s+)?({_DAY})\b|\b({_DAY})\s+(?:of\s+)?next\s+week\b"
)
_NEXT_DAY_RE = re.compile(rf"\bnext\s+({_DAY})\b")
_THIS_DAY_RE = re.compile(rf"\bthis\s+(?:coming\s+)?({_DAY})\b")
_BARE_DAY_RE = re.compile(rf"\b({_DAY})\b")

_MONTH_DAY_RE = re.compile(
    rf"\b({_MONTH})\.?\s+(\d{{1,2}}){_ORDINAL}\b(?:,?\s+(\d{{4}})\b)?"
)
_DAY_MONTH_RE = re.compile(
    rf"\b(\d{{1,2}}){_ORDINAL}\s+(?:of\s+)?({_MONTH})\b\.?(?:,?\s+(\d{{4}})\b)?"
)
_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")

_CLOCK_TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*(am|pm|a\.m\.|p\.m\.)?")
_MERIDIEM_TIME_RE = re.compile(r"\b(\d{1,2})\s*(am|pm|a\.m\.|p\.m\.)(?![a-z])")
_OCLOCK_RE = re.compile(r"\b(\d{1,2})\s*o['’]?\s?clock\b")
_NOT_A_TIME = r"(?!\s*(?:[:/\d]|st\b|nd\b|rd\b|th\b|am\b|pm\b|teeth\b|tooth\b))"
_CONTEXT_TIME_RE = re.compile(
    rf"\b(at|around|about|by|morning|afternoon|evening)\s+(?:at\s+|around\s+)?(\d{{1,2}})\b{_NOT_A_TIME}"
)
_PERIOD_SUFFIX_RE = re.compile(r"\b(\d{1,2})\s+in\s+the\s+(morning|afternoon|evening)\b")


@dataclass(frozen=True)
class TimeOfDay:
    """A preferred wall-clock time."""

    hour: int
    minute: int = 0

    def as_time(self) -> time:
        return time(self.hour, self.minute)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class DateTimePreference:
    """A possibly partial date/time constraint extracted from text."""

    date: Optional[date] = None
    time: Optional[TimeOfDay] = None
    # Reserved for range expressions ("between Monday and Wednesday")
    date_range: None = None

    @property
    def is_empty(self) -> bool:
        return self.date is None and self.time is None

    @property
    def start_of_day(self) -> Optional[datetime]:
        """The preferred date at 00:00, if a date was given."""
        if self.date is None:
            return None
        return datetime.combine(self.date, time(0))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "date": self.date.isoformat() if self.date else None,
            "time": {"hour": self.time.hour, "minute": self.time.minute} if self.time else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DateTimePreference":
        """Create from a to_dict() payload."""
        if not data:
            return cls()
        time_data = data.get("time")
        return cls(
            date=date.fromisoformat(data["date"]) if data.get("date") else None,
            time=TimeOfDay(time_data["hour"], time_data.get("minute", 0)) if time_data else None,
        )


def _to_wall_clock(reference: datetime, timezone_name: str) -> datetime:
    """Normalize the reference onto the clinic's naive wall clock."""
    if reference.tzinfo is not None:
        reference = reference.astimezone(ZoneInfo(timezone_name)).replace(tzinfo=None)
    return reference


def _days_until(target: int, current: int) -> int:
    return (target - current) % 7


def _next_week_occurrence(target: int, today: date) -> date:
    """Weekday on or after today + 7, i.e. never inside the coming week."""
    return today + timedelta(days=7 + _days_until(target, today.weekday()))


def _this_occurrence(target: int, today: date) -> date:
    """Nearest occurrence of the weekday, today included."""
    return today + timedelta(days=_days_until(target, today.weekday()))


def _upcoming_occurrence(target: int, today: date) -> date:
    """Nearest occurrence strictly after today."""
    return today + timedelta(days=_days_until(target, today.weekday()) or 7)


def _resolve_year(month: int, day: int, year: Optional[int], today: date) -> Optional[date]:
    """Build a date, rolling a year-less date that already passed into next year."""
    try:
        if year is not None:
            return date(year, month, day)
        candidate = date(today.year, month, day)
        if candidate < today:
            candidate = date(today.year + 1, month, day)
        return candidate
    except ValueError:
        return None


def _parse_month_names(msg: str, today: date) -> Optional[date]:
    match = _MONTH_DAY_RE.search(msg)
    if match:
        month = MONTHS[match.group(1)]
        day = int(match.group(2))
        year = int(match.group(3)) if match.group(3) else None
        return _resolve_year(month, day, year, today)

    match = _DAY_MONTH_RE.search(msg)
    if match:
        day = int(match.group(1))
        month = MONTHS[match.group(2)]
        year = int(match.group(3)) if match.group(3) else None
        return _resolve_year(month, day, year, today)

    return None


def _parse_numeric(msg: str, today: date) -> Optional[date]:
    match = _ISO_DATE_RE.search(msg)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _resolve_year(month, day, year, today)

    match = _SLASH_DATE_RE.search(msg)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        return _resolve_year(month, day, None, today)

    return None


def parse_date(msg: str, today: date) -> Optional[date]:
    """Resolve the date part of a lowercased message relative to ``today``."""
    if _TODAY_RE.search(msg):
        return today
    if _TOMORROW_RE.search(msg):
        return today + timedelta(days=1)

    match = _NEXT_WEEK_DAY_RE.search(msg)
    if match:
        name = match.group(1) or match.group(2)
        return _next_week_occurrence(WEEKDAYS[name], today)

    match = _NEXT_DAY_RE.search(msg)
    if match:
        return _next_week_occurrence(WEEKDAYS[match.group(1)], today)

    match = _THIS_DAY_RE.search(msg)
    if match:
        return _this_occurrence(WEEKDAYS[match.group(1)], today)

    match = _BARE_DAY_RE.search(msg)
    if match:
        return _upcoming_occurrence(WEEKDAYS[match.group(1)], today)

    if _NEXT_WEEK_RE.search(msg):
        return today + timedelta(days=7)

    named = _parse_month_names(msg, today)
    if named is not None:
        return named

    return _parse_numeric(msg, today)


def _apply_meridiem(hour: int, meridiem: str) -> int:
    if meridiem.startswith("p") and hour != 12:
        return hour + 12
    if meridiem.startswith("a") and hour == 12:
        return 0
    return hour


def _contextual_hour(hour: int, context: str) -> int:
    """Interpret a bare 1..12 hour given the word in front of it."""
    if context == "morning":
        return 0 if hour == 12 else hour
    if context in ("afternoon", "evening"):
        return hour if hour == 12 else hour + 12
    # Clinic hours: "at 3" means 15:00, "at 9" means 09:00
    return hour + 12 if 1 <= hour <= 7 else hour


def parse_time(msg: str) -> Optional[TimeOfDay]:
    """Resolve the time part of a lowercased message."""
    match = _CLOCK_TIME_RE.search(msg)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if match.group(3):
            if 1 <= hour <= 12:
                hour = _apply_meridiem(hour, match.group(3))
            else:
                hour = -1
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return TimeOfDay(hour, minute)

    match = _MERIDIEM_TIME_RE.search(msg)
    if match:
        hour = int(match.group(1))
        if 1 <= hour <= 12:
            return TimeOfDay(_apply_meridiem(hour, match.group(2)))

    match = _OCLOCK_RE.search(msg)
    if match:
        hour = int(match.group(1))
        if 0 <= hour <= 23:
            return TimeOfDay(hour)

    match = _PERIOD_SUFFIX_RE.search(msg)
    if match:
        hour = int(match.group(1))
        if 1 <= hour <= 12:
            return TimeOfDay(_contextual_hour(hour, match.group(2)))

    match = _CONTEXT_TIME_RE.search(msg)
    if match:
        hour = int(match.group(2))
        if 1 <= hour <= 12:
            return TimeOfDay(_contextual_hour(hour, match.group(1)))

    return None


def parse_preference(
    text: Optional[str],
    reference: datetime,
    timezone_name: str = "UTC",
) -> DateTimePreference:
    """Parse a date/time preference out of free text.

    Args:
        text: The patient's message
        reference: "Now" for relative expressions; aware datetimes are
            converted to the clinic wall clock first
        timezone_name: Clinic timezone used for that conversion

    Returns:
        DateTimePreference with independently optional date and time
    """
    if not text:
        return DateTimePreference()

    msg = text.lower()
    today = _to_wall_clock(reference, timezone_name).date()

    preference = DateTimePreference(date=parse_date(msg, today), time=parse_time(msg))
    logger.debug(f"Parsed preference from {text!r}: {preference}")
    return preference
