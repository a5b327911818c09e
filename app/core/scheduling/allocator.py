"""Slot selection over computed free intervals."""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.core.intelligence.dates.matcher import matches
from app.core.intelligence.dates.parser import DateTimePreference
from app.core.scheduling.availability import AvailableSlot


def earliest_fit(
    slots: Iterable[AvailableSlot],
    duration_minutes: int,
) -> Optional[AvailableSlot]:
    """First slot (by start) long enough for the appointment, or None."""
    for slot in sorted(slots, key=lambda s: s.start):
        if slot.duration_minutes >= duration_minutes:
            return slot
    return None


def filter_by_range(
    slots: Iterable[AvailableSlot],
    range_start: datetime,
    range_end: datetime,
    duration_minutes: int,
) -> list[AvailableSlot]:
    """Slots fully inside [range_start, range_end] with sufficient duration."""
    return [
        slot
        for slot in slots
        if slot.start >= range_start
        and slot.end <= range_end
        and slot.duration_minutes >= duration_minutes
    ]


def select_slot(
    slots: list[AvailableSlot],
    preference: Optional[DateTimePreference],
    duration_minutes: int,
) -> Optional[AvailableSlot]:
    """Pick the slot to propose.

    The first slot matching the patient's preference wins; without a match
    the earliest slot that fits the duration is used instead.
    """
    if preference is not None and not preference.is_empty:
        for slot in slots:
            if slot.duration_minutes >= duration_minutes and matches(slot.start, preference):
                return slot
    return earliest_fit(slots, duration_minutes)


def appointment_window(
    slot: AvailableSlot,
    duration_minutes: int,
) -> tuple[datetime, datetime]:
    """Start/end of the actual appointment placed at the start of a slot."""
    if duration_minutes > slot.duration_minutes:
        raise ValueError(
            f"{duration_minutes} min appointment does not fit a "
            f"{slot.duration_minutes} min slot"
        )
    return slot.start, slot.start + timedelta(minutes=duration_minutes)
