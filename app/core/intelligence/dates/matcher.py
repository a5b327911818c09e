"""Fuzzy matching of concrete slots against a parsed preference."""

from datetime import datetime

from .parser import DateTimePreference

# Accept slots whose hour is within this many hours of the preferred hour
HOUR_TOLERANCE = 1


def matches(slot_start: datetime, preference: DateTimePreference) -> bool:
    """Check whether a slot start satisfies a date/time preference.

    The date must be the same calendar day; the time must be within one
    hour (minutes ignored). Absent dimensions are unconstrained.
    """
    if preference.is_empty:
        return True

    if preference.date is not None and slot_start.date() != preference.date:
        return False

    if preference.time is not None:
        if abs(slot_start.hour - preference.time.hour) > HOUR_TOLERANCE:
            return False

    return True
