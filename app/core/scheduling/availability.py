"""
Availability gap-finder.

Derives bookable free intervals for a dentist from the busy intervals of
their calendar, restricted to working hours on weekdays.

All datetimes handled here are naive clinic wall-clock times. Callers
convert at the edges (see clinic_now and the calendar clients).
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


WEEKDAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


def clinic_now(timezone_name: str = "UTC") -> datetime:
    """Current clinic wall-clock time as a naive datetime."""
    return datetime.now(ZoneInfo(timezone_name)).replace(tzinfo=None, microsecond=0)


@dataclass(frozen=True)
class WorkingHours:
    """Daily opening window, [start_hour, end_hour)."""

    start_hour: int = 9
    end_hour: int = 18

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValueError(
                f"Invalid working hours: {self.start_hour}-{self.end_hour}"
            )

    def bounds(self, day: date) -> tuple[datetime, datetime]:
        """Opening and closing instants for a calendar day."""
        start = datetime.combine(day, time(self.start_hour))
        if self.end_hour == 24:
            end = datetime.combine(day + timedelta(days=1), time(0))
        else:
            end = datetime.combine(day, time(self.end_hour))
        return start, end


@dataclass(frozen=True)
class BusyInterval:
    """A booked range on one dentist's calendar."""

    start: datetime
    end: datetime
    event_id: Optional[str] = None


@dataclass(frozen=True)
class AvailableSlot:
    """A free interval offered for booking."""

    practitioner: str
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def weekday(self) -> str:
        return WEEKDAY_NAMES[self.start.weekday()]

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "practitioner": self.practitioner,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
            "weekday": self.weekday,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AvailableSlot":
        """Create from a to_dict() payload."""
        return cls(
            practitioner=data["practitioner"],
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


def _is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def compute_free_intervals(
    busy: Iterable[BusyInterval],
    range_start: datetime,
    range_end: datetime,
    now: datetime,
    working_hours: WorkingHours = WorkingHours(),
    min_duration_minutes: int = 15,
    practitioner: str = "",
) -> list[AvailableSlot]:
    """Compute free working-hour intervals for a single dentist.

    Walks each weekday between range_start and range_end, clipped to
    working hours (and to ``now`` on the current day), and emits every gap
    between busy intervals that is at least ``min_duration_minutes`` long.

    Args:
        busy: Busy intervals for this dentist (any order, may overlap)
        range_start: First instant of the search range
        range_end: Last instant of the search range
        now: Current clinic time; nothing before it is ever offered
        working_hours: Daily opening window
        min_duration_minutes: Minimum gap length to emit
        practitioner: Dentist name stamped onto each slot

    Returns:
        Free slots sorted by start time
    """
    min_gap = timedelta(minutes=min_duration_minutes)
    busy_sorted = sorted(busy, key=lambda b: b.start)
    slots: list[AvailableSlot] = []

    day = range_start.date()
    last_day = range_end.date()

    while day <= last_day:
        if _is_weekend(day):
            day += timedelta(days=1)
            continue

        day_start, day_end = working_hours.bounds(day)
        day_start = max(day_start, range_start)
        day_end = min(day_end, range_end)
        if day == now.date():
            day_start = max(day_start, now)

        if day_start < day_end:
            cursor = day_start
            for interval in busy_sorted:
                if interval.end <= day_start or interval.start >= day_end:
                    continue
                gap_end = min(interval.start, day_end)
                if gap_end - cursor >= min_gap:
                    slots.append(AvailableSlot(practitioner, cursor, gap_end))
                # Overlapping busy intervals must not pull the cursor back
                cursor = max(cursor, interval.end)
                if cursor >= day_end:
                    break

            if day_end - cursor >= min_gap:
                slots.append(AvailableSlot(practitioner, cursor, day_end))

        day += timedelta(days=1)

    # Last line of defence against clock/timezone mistakes upstream
    slots = [s for s in slots if s.start >= now]
    slots.sort(key=lambda s: s.start)
    return slots


def slots_for_practitioners(
    busy_by_practitioner: Mapping[str, Iterable[BusyInterval]],
    range_start: datetime,
    range_end: datetime,
    now: datetime,
    working_hours: WorkingHours = WorkingHours(),
    min_duration_minutes: int = 15,
) -> list[AvailableSlot]:
    """Merge free slots of several dentists into one start-sorted list."""
    merged: list[AvailableSlot] = []
    for practitioner, busy in busy_by_practitioner.items():
        free = compute_free_intervals(
            busy,
            range_start=range_start,
            range_end=range_end,
            now=now,
            working_hours=working_hours,
            min_duration_minutes=min_duration_minutes,
            practitioner=practitioner,
        )
        logger.debug(f"{practitioner}: {len(free)} free slots")
        merged.extend(free)

    merged.sort(key=lambda s: (s.start, s.practitioner))
    return merged
