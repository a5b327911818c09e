"""Date/time preference parsing and matching."""

from .parser import DateTimePreference, TimeOfDay, parse_preference
from .matcher import matches

__all__ = [
    "DateTimePreference",
    "TimeOfDay",
    "parse_preference",
    "matches",
]
