"""Tests for the availability gap-finder and slot allocator."""

import random

import pytest
from datetime import datetime, timedelta

from app.core.intelligence.dates.parser import DateTimePreference, TimeOfDay
from app.core.scheduling.allocator import (
    appointment_window,
    earliest_fit,
    filter_by_range,
    select_slot,
)
from app.core.scheduling.availability import (
    AvailableSlot,
    BusyInterval,
    WorkingHours,
    compute_free_intervals,
    slots_for_practitioners,
)

# Monday
MONDAY = datetime(2024, 1, 15)


def at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


class TestWorkingHours:
    """Test WorkingHours."""

    def test_bounds(self):
        start, end = WorkingHours(9, 18).bounds(MONDAY.date())
        assert start == at(MONDAY, 9)
        assert end == at(MONDAY, 18)

    def test_end_of_day(self):
        _, end = WorkingHours(20, 24).bounds(MONDAY.date())
        assert end == MONDAY + timedelta(days=1)

    def test_invalid_hours(self):
        with pytest.raises(ValueError):
            WorkingHours(18, 9)


class TestComputeFreeIntervals:
    """Test compute_free_intervals."""

    def test_single_busy_block(self):
        """A busy hour splits the day into two gaps."""
        busy = [BusyInterval(at(MONDAY, 10), at(MONDAY, 11))]

        slots = compute_free_intervals(
            busy,
            range_start=MONDAY,
            range_end=at(MONDAY, 23, 59),
            now=MONDAY,
            practitioner="Dr GeneralA",
        )

        assert [(s.start, s.end) for s in slots] == [
            (at(MONDAY, 9), at(MONDAY, 10)),
            (at(MONDAY, 11), at(MONDAY, 18)),
        ]
        assert slots[0].duration_minutes == 60
        assert slots[1].duration_minutes == 420
        assert all(s.practitioner == "Dr GeneralA" for s in slots)

    def test_empty_day(self):
        slots = compute_free_intervals([], MONDAY, at(MONDAY, 23), now=MONDAY)
        assert len(slots) == 1
        assert slots[0].duration_minutes == 9 * 60

    def test_weekends_skipped(self):
        """Saturday and Sunday never produce slots."""
        saturday = MONDAY + timedelta(days=5)
        slots = compute_free_intervals(
            [],
            range_start=saturday,
            range_end=saturday + timedelta(days=2, hours=23),
            now=MONDAY,
        )

        assert [s.start for s in slots] == [at(saturday + timedelta(days=2), 9)]
        assert all(s.start.weekday() < 5 for s in slots)

    def test_clipped_to_now(self):
        """Nothing before the current time is offered."""
        now = at(MONDAY, 13, 20)
        slots = compute_free_intervals([], MONDAY, at(MONDAY, 23), now=now)

        assert slots[0].start == now
        assert slots[0].end == at(MONDAY, 18)

    def test_day_in_the_past_is_empty(self):
        now = at(MONDAY, 19)
        assert compute_free_intervals([], MONDAY, at(MONDAY, 23), now=now) == []

    def test_overlapping_busy_intervals(self):
        """Overlaps do not pull the cursor backwards."""
        busy = [
            BusyInterval(at(MONDAY, 10), at(MONDAY, 12)),
            BusyInterval(at(MONDAY, 11), at(MONDAY, 11, 30)),
            BusyInterval(at(MONDAY, 14), at(MONDAY, 15)),
        ]

        slots = compute_free_intervals(busy, MONDAY, at(MONDAY, 23), now=MONDAY)

        assert [(s.start, s.end) for s in slots] == [
            (at(MONDAY, 9), at(MONDAY, 10)),
            (at(MONDAY, 12), at(MONDAY, 14)),
            (at(MONDAY, 15), at(MONDAY, 18)),
        ]

    def test_busy_until_closing_leaves_no_trailing_slot(self):
        busy = [BusyInterval(at(MONDAY, 16), at(MONDAY, 18))]

        slots = compute_free_intervals(busy, MONDAY, at(MONDAY, 23), now=MONDAY)

        assert slots[-1].end == at(MONDAY, 16)

    def test_busy_outside_working_hours_ignored(self):
        busy = [
            BusyInterval(at(MONDAY, 7), at(MONDAY, 8)),
            BusyInterval(at(MONDAY, 19), at(MONDAY, 20)),
        ]

        slots = compute_free_intervals(busy, MONDAY, at(MONDAY, 23), now=MONDAY)

        assert [(s.start, s.end) for s in slots] == [(at(MONDAY, 9), at(MONDAY, 18))]

    def test_short_gaps_dropped(self):
        """Gaps shorter than the minimum duration are not emitted."""
        busy = [
            BusyInterval(at(MONDAY, 9), at(MONDAY, 10)),
            BusyInterval(at(MONDAY, 10, 10), at(MONDAY, 18)),
        ]

        slots = compute_free_intervals(
            busy, MONDAY, at(MONDAY, 23), now=MONDAY, min_duration_minutes=15
        )

        assert slots == []

    def test_multiple_days_sorted(self):
        busy = [BusyInterval(at(MONDAY + timedelta(days=1), 9), at(MONDAY + timedelta(days=1), 12))]

        slots = compute_free_intervals(
            busy, MONDAY, MONDAY + timedelta(days=2), now=MONDAY
        )

        starts = [s.start for s in slots]
        assert starts == sorted(starts)
        assert at(MONDAY + timedelta(days=1), 12) in starts

    def test_random_calendars_respect_busy_and_hours(self):
        rng = random.Random(1234)
        week_end = MONDAY + timedelta(days=7)

        for _ in range(200):
            busy = []
            for _ in range(rng.randint(0, 12)):
                start = MONDAY + timedelta(minutes=15 * rng.randrange(7 * 96))
                busy.append(BusyInterval(start, start + timedelta(minutes=15 * rng.randint(1, 40))))
            now = MONDAY + timedelta(minutes=rng.randrange(7 * 24 * 60))
            min_duration = rng.choice([15, 30, 45, 60])

            slots = compute_free_intervals(
                busy, MONDAY, week_end, now=now, min_duration_minutes=min_duration
            )

            for slot in slots:
                assert slot.start.weekday() < 5
                assert slot.start.date() == slot.end.date()
                assert slot.start >= at(slot.start, 9)
                assert slot.end <= at(slot.start, 18)
                assert slot.start >= now
                assert slot.duration_minutes == (slot.end - slot.start) // timedelta(minutes=1)
                assert slot.duration_minutes >= min_duration
                for interval in busy:
                    assert slot.end <= interval.start or slot.start >= interval.end
            for earlier, later in zip(slots, slots[1:]):
                assert earlier.end <= later.start


class TestSlotsForPractitioners:
    """Test slots_for_practitioners."""

    def test_merges_and_sorts(self):
        busy = {
            "Dr GeneralA": [BusyInterval(at(MONDAY, 9), at(MONDAY, 12))],
            "Dr GeneralB": [],
        }

        slots = slots_for_practitioners(busy, MONDAY, at(MONDAY, 23), now=MONDAY)

        assert [(s.practitioner, s.start) for s in slots] == [
            ("Dr GeneralB", at(MONDAY, 9)),
            ("Dr GeneralA", at(MONDAY, 12)),
        ]


class TestAvailableSlot:
    """Test AvailableSlot."""

    def test_to_dict_from_dict(self):
        slot = AvailableSlot("Dr GeneralA", at(MONDAY, 9), at(MONDAY, 10))

        data = slot.to_dict()

        assert data["duration_minutes"] == 60
        assert data["weekday"] == "Monday"
        assert AvailableSlot.from_dict(data) == slot


class TestAllocator:
    """Test slot selection."""

    @pytest.fixture
    def slots(self):
        return [
            AvailableSlot("Dr GeneralA", at(MONDAY, 9), at(MONDAY, 9, 20)),
            AvailableSlot("Dr GeneralA", at(MONDAY, 11), at(MONDAY, 12)),
            AvailableSlot("Dr GeneralB", at(MONDAY, 14), at(MONDAY, 18)),
            AvailableSlot("Dr GeneralA", at(MONDAY + timedelta(days=1), 10), at(MONDAY + timedelta(days=1), 12)),
        ]

    def test_earliest_fit_skips_short_slots(self, slots):
        slot = earliest_fit(slots, 30)
        assert slot.start == at(MONDAY, 11)

    def test_earliest_fit_never_undersized(self, slots):
        assert earliest_fit(slots, 5 * 60) is None

    def test_earliest_fit_unsorted_input(self, slots):
        assert earliest_fit(list(reversed(slots)), 15).start == at(MONDAY, 9)

    def test_filter_by_range(self, slots):
        found = filter_by_range(slots, at(MONDAY, 10), at(MONDAY, 18), 30)
        assert [s.start for s in found] == [at(MONDAY, 11), at(MONDAY, 14)]

    def test_select_prefers_matching_slot(self, slots):
        preference = DateTimePreference(date=(MONDAY + timedelta(days=1)).date(), time=TimeOfDay(10))
        assert select_slot(slots, preference, 30) == slots[3]

    def test_select_matches_within_an_hour(self, slots):
        preference = DateTimePreference(date=MONDAY.date(), time=TimeOfDay(15))
        assert select_slot(slots, preference, 30) == slots[2]

    def test_select_falls_back_to_earliest(self, slots):
        """No matching slot: earliest slot with enough time wins."""
        preference = DateTimePreference(date=(MONDAY + timedelta(days=3)).date())
        assert select_slot(slots, preference, 30) == slots[1]

    def test_select_respects_duration_on_match(self, slots):
        """A matching slot that is too short is not chosen."""
        preference = DateTimePreference(date=MONDAY.date(), time=TimeOfDay(9))
        assert select_slot(slots, preference, 30) == slots[1]

    def test_select_without_preference(self, slots):
        assert select_slot(slots, None, 15) == slots[0]
        assert select_slot(slots, DateTimePreference(), 15) == slots[0]

    def test_select_nothing_fits(self, slots):
        assert select_slot(slots, None, 600) is None

    def test_appointment_window(self, slots):
        start, end = appointment_window(slots[2], 45)
        assert start == at(MONDAY, 14)
        assert end == at(MONDAY, 14, 45)

    def test_appointment_window_too_long(self, slots):
        with pytest.raises(ValueError):
            appointment_window(slots[0], 30)
