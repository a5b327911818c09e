"""Tests for calendar clients."""

import json
import pytest
from datetime import datetime

import httpx

from app.core.scheduling.calendar_client import (
    TITLE_PREFIX,
    Booking,
    CalendarError,
    HttpCalendarClient,
    InMemoryCalendar,
    booking_request_id,
    format_event_title,
    normalize_phone,
    parse_event_title,
    phone_matches,
)

DENTISTS = ["Dr BracesA", "Dr BracesB", "Dr GeneralA", "Dr GeneralB"]
NOW = datetime(2024, 1, 15, 8, 0)


def make_booking(**overrides) -> Booking:
    data = dict(
        practitioner="Dr GeneralA",
        patient_name="Jane Doe",
        patient_phone="+1234567890",
        treatment="Cleaning",
        start=datetime(2024, 1, 16, 10, 0),
        end=datetime(2024, 1, 16, 10, 30),
    )
    data.update(overrides)
    return Booking(**data)


class TestPhoneMatching:
    """Test phone normalization."""

    def test_normalize(self):
        assert normalize_phone("+1 (555) 123-4567") == "15551234567"
        assert normalize_phone(None) == ""

    def test_exact(self):
        assert phone_matches("+15551234567", "1-555-123-4567")

    def test_suffix_either_way(self):
        assert phone_matches("+1234567890", "1234567890")
        assert phone_matches("234567890", "+1234567890")

    def test_different_numbers(self):
        assert not phone_matches("+15551234567", "+15557654321")
        assert not phone_matches("", "+15551234567")

    def test_short_fragment_does_not_match(self):
        # "web-7" normalizes to "7"
        assert not phone_matches("+15551234567", "7")
        assert not phone_matches("+15551234567", "web-7")
        assert not phone_matches("4567", "+15551234567")

    def test_short_exact_match(self):
        assert phone_matches("4567", "45-67")

    def test_seven_digit_suffix(self):
        assert phone_matches("+15551234567", "1234567")


class TestEventTitles:
    """Test event title formatting and parsing."""

    def test_format(self):
        title = format_event_title("Dr GeneralA", "Jane Doe", "Cleaning", "+1234567890")
        assert title == f"{TITLE_PREFIX} Dr GeneralA Jane Doe Cleaning +1234567890"

    def test_parse_round_trip(self):
        title = format_event_title("Dr BracesB", "Mary Ann Smith", "Braces Maintenance", "+15550001111")

        assert parse_event_title(title, DENTISTS) == (
            "Dr BracesB", "Mary Ann Smith", "Braces Maintenance", "+15550001111",
        )

    def test_parse_unknown_names_fall_back_to_single_words(self):
        title = f"{TITLE_PREFIX} Smith Jane Doe Whitening 5551234"
        assert parse_event_title(title) == ("Smith", "Jane Doe", "Whitening", "5551234")

    def test_parse_foreign_event(self):
        assert parse_event_title("Lunch break", DENTISTS) is None
        assert parse_event_title(f"{TITLE_PREFIX} incomplete", DENTISTS) is None


class TestInMemoryCalendar:
    """Test InMemoryCalendar."""

    @pytest.fixture
    def calendar(self):
        return InMemoryCalendar(practitioners=DENTISTS, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_create_and_list_busy(self, calendar):
        result = await calendar.create_event("Dr GeneralA", make_booking())

        assert result.success
        busy = await calendar.list_busy("Dr GeneralA", NOW, datetime(2024, 1, 20))
        assert [(b.start, b.end, b.event_id) for b in busy] == [
            (datetime(2024, 1, 16, 10, 0), datetime(2024, 1, 16, 10, 30), result.event_id)
        ]

    @pytest.mark.asyncio
    async def test_overlap_refused(self, calendar):
        await calendar.create_event("Dr GeneralA", make_booking())

        result = await calendar.create_event(
            "Dr GeneralA",
            make_booking(start=datetime(2024, 1, 16, 10, 15), end=datetime(2024, 1, 16, 10, 45)),
        )

        assert not result.success
        assert result.error_code == "conflict"

    @pytest.mark.asyncio
    async def test_adjacent_allowed(self, calendar):
        await calendar.create_event("Dr GeneralA", make_booking())

        result = await calendar.create_event(
            "Dr GeneralA",
            make_booking(start=datetime(2024, 1, 16, 10, 30), end=datetime(2024, 1, 16, 11, 0)),
        )

        assert result.success

    @pytest.mark.asyncio
    async def test_unknown_calendar(self, calendar):
        result = await calendar.create_event("Dr Nobody", make_booking(practitioner="Dr Nobody"))
        assert result.error_code == "unknown_calendar"

    @pytest.mark.asyncio
    async def test_delete(self, calendar):
        created = await calendar.create_event("Dr GeneralA", make_booking())

        assert (await calendar.delete_event("Dr GeneralA", created.event_id)).success
        missing = await calendar.delete_event("Dr GeneralA", created.event_id)
        assert missing.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_find_booking_by_contact_tolerates_format(self, calendar):
        """A stored "+1234567890" is found by "1234567890"."""
        created = await calendar.create_event("Dr GeneralA", make_booking())

        found = await calendar.find_booking_by_contact("1234567890")

        assert found is not None
        assert found.event_id == created.event_id
        assert found.practitioner == "Dr GeneralA"
        assert found.patient_name == "Jane Doe"
        assert found.treatment == "Cleaning"

    @pytest.mark.asyncio
    async def test_find_bookings_sorted_and_filtered(self, calendar):
        calendar.add_busy("Dr GeneralB", datetime(2024, 1, 16, 9), datetime(2024, 1, 16, 12), title="Staff meeting")
        await calendar.create_event(
            "Dr GeneralB",
            make_booking(practitioner="Dr GeneralB", start=datetime(2024, 1, 18, 9), end=datetime(2024, 1, 18, 9, 30)),
        )
        await calendar.create_event("Dr GeneralA", make_booking())
        await calendar.create_event(
            "Dr GeneralA",
            make_booking(patient_phone="+19999999999", start=datetime(2024, 1, 17, 9), end=datetime(2024, 1, 17, 9, 30)),
        )

        found = await calendar.find_bookings_by_contact("+1234567890")

        assert [(b.practitioner, b.start) for b in found] == [
            ("Dr GeneralA", datetime(2024, 1, 16, 10, 0)),
            ("Dr GeneralB", datetime(2024, 1, 18, 9, 0)),
        ]

    @pytest.mark.asyncio
    async def test_past_bookings_not_found(self, calendar):
        await calendar.create_event(
            "Dr GeneralA",
            make_booking(start=datetime(2024, 1, 12, 10), end=datetime(2024, 1, 12, 10, 30)),
        )
        assert await calendar.find_booking_by_contact("+1234567890") is None

    @pytest.mark.asyncio
    async def test_repeated_request_returns_same_event(self, calendar):
        booking = make_booking(request_id="req-1")

        first = await calendar.create_event("Dr GeneralA", booking)
        second = await calendar.create_event("Dr GeneralA", booking)

        assert second.success
        assert second.event_id == first.event_id
        assert len(await calendar.list_busy("Dr GeneralA", NOW, datetime(2024, 1, 20))) == 1

    @pytest.mark.asyncio
    async def test_request_for_deleted_event_creates_again(self, calendar):
        booking = make_booking(request_id="req-1")
        first = await calendar.create_event("Dr GeneralA", booking)
        await calendar.delete_event("Dr GeneralA", first.event_id)

        second = await calendar.create_event("Dr GeneralA", booking)

        assert second.success
        assert second.event_id != first.event_id


class TestHttpCalendarClient:
    """Test HttpCalendarClient against a mock transport."""

    @pytest.fixture
    def requests(self):
        return []

    def make_client(self, requests, handler) -> HttpCalendarClient:
        def record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        return HttpCalendarClient(
            base_url="http://calendar.test",
            timeout=1,
            practitioners=["Dr GeneralA", "Dr GeneralB"],
            calendar_refs={"Dr GeneralA": "general-a"},
            transport=httpx.MockTransport(record),
            clock=lambda: NOW,
        )

    @pytest.mark.asyncio
    async def test_list_busy(self, requests):
        def handler(request):
            return httpx.Response(200, json={"items": [
                {"id": "e2", "start": {"dateTime": "2024-01-16T14:00:00Z"}, "end": {"dateTime": "2024-01-16T15:00:00Z"}},
                {"id": "e1", "start": "2024-01-16T09:00:00", "end": "2024-01-16T10:00:00"},
                {"id": "bad"},
            ]})

        client = self.make_client(requests, handler)
        busy = await client.list_busy("Dr GeneralA", NOW, datetime(2024, 1, 20))
        await client.close()

        assert [b.event_id for b in busy] == ["e1", "e2"]
        assert busy[1].start == datetime(2024, 1, 16, 14, 0)
        assert requests[0].url.path == "/calendars/general-a/events"
        assert requests[0].url.params["timeMin"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_list_busy_error_raises(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(500))

        with pytest.raises(CalendarError):
            await client.list_busy("Dr GeneralA", NOW, datetime(2024, 1, 20))

    @pytest.mark.asyncio
    async def test_create_event(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(201, json={"id": "evt-1"}))

        result = await client.create_event("Dr GeneralB", make_booking(practitioner="Dr GeneralB"))

        assert result.success
        assert result.event_id == "evt-1"
        # Dentists without a configured ref use their name
        assert "GeneralB" in requests[0].url.path
        assert requests[0].method == "POST"
        payload = json.loads(requests[0].content)
        assert payload["summary"] == f"{TITLE_PREFIX} Dr GeneralB Jane Doe Cleaning +1234567890"
        assert payload["start"] == "2024-01-16T10:00:00"

    @pytest.mark.asyncio
    async def test_create_event_http_error(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(409, text="conflict"))

        result = await client.create_event("Dr GeneralA", make_booking())

        assert not result.success
        assert result.error_code == "http_409"

    @pytest.mark.asyncio
    async def test_create_event_connection_error(self, requests):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = self.make_client(requests, handler)
        result = await client.create_event("Dr GeneralA", make_booking())

        assert not result.success
        assert result.error_code == "connection_error"

    @pytest.mark.asyncio
    async def test_delete_event(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(204))

        result = await client.delete_event("Dr GeneralA", "evt-1")

        assert result.success
        assert requests[0].method == "DELETE"
        assert requests[0].url.path == "/calendars/general-a/events/evt-1"

    @pytest.mark.asyncio
    async def test_delete_missing_event(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(404))

        result = await client.delete_event("Dr GeneralA", "evt-1")

        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_find_booking_by_contact(self, requests):
        def handler(request):
            if "general-a" in request.url.path:
                return httpx.Response(200, json=[
                    {
                        "id": "evt-7",
                        "summary": f"{TITLE_PREFIX} Dr GeneralA Jane Doe Filling +1234567890",
                        "start": "2024-01-17T11:00:00",
                        "end": "2024-01-17T12:00:00",
                    },
                    {"id": "evt-8", "summary": "Lunch", "start": "2024-01-17T12:00:00", "end": "2024-01-17T13:00:00"},
                ])
            return httpx.Response(200, json=[])

        client = self.make_client(requests, handler)
        found = await client.find_booking_by_contact("1234567890")

        assert found.event_id == "evt-7"
        assert found.treatment == "Filling"
        assert found.calendar_ref == "general-a"
        assert found.start == datetime(2024, 1, 17, 11, 0)

    @pytest.mark.asyncio
    async def test_create_event_sends_request_id(self, requests):
        client = self.make_client(requests, lambda request: httpx.Response(201, json={"id": "evt-1"}))
        key = booking_request_id("+1234567890", "Dr GeneralA", datetime(2024, 1, 16, 10, 0))

        await client.create_event("Dr GeneralA", make_booking(request_id=key))

        assert json.loads(requests[0].content)["requestId"] == key
        assert requests[0].headers["Idempotency-Key"] == key

    @pytest.mark.asyncio
    async def test_create_event_timeout(self, requests):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self.make_client(requests, handler)
        result = await client.create_event("Dr GeneralA", make_booking())

        assert not result.success
        assert result.error_code == "timeout"

    @pytest.mark.asyncio
    async def test_delete_event_timeout(self, requests):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self.make_client(requests, handler)
        result = await client.delete_event("Dr GeneralA", "evt-1")

        assert result.error_code == "timeout"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"null", b"42", b'"events"', b'{"items": null}'])
    async def test_malformed_event_list_raises(self, requests, body):
        client = self.make_client(
            requests,
            lambda request: httpx.Response(200, content=body, headers={"content-type": "application/json"}),
        )

        with pytest.raises(CalendarError):
            await client.list_busy("Dr GeneralA", NOW, datetime(2024, 1, 20))
        with pytest.raises(CalendarError):
            await client.find_booking_by_contact("1234567890")

    @pytest.mark.asyncio
    async def test_non_object_events_skipped(self, requests):
        def handler(request):
            if "general-a" not in request.url.path:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[
                None,
                "evt-9",
                {
                    "id": "evt-7",
                    "summary": f"{TITLE_PREFIX} Dr GeneralA Jane Doe Filling +1234567890",
                    "start": "2024-01-17T11:00:00",
                    "end": "2024-01-17T12:00:00",
                },
            ])

        client = self.make_client(requests, handler)
        found = await client.find_bookings_by_contact("1234567890")

        assert [b.event_id for b in found] == ["evt-7"]


class TestRequestIds:
    """Test booking idempotency keys."""

    def test_stable(self):
        start = datetime(2024, 1, 16, 10, 0)
        assert booking_request_id("c1", "Dr GeneralA", start) == booking_request_id("c1", "Dr GeneralA", start)

    def test_differs_per_attempt(self):
        start = datetime(2024, 1, 16, 10, 0)
        key = booking_request_id("c1", "Dr GeneralA", start)

        assert booking_request_id("c2", "Dr GeneralA", start) != key
        assert booking_request_id("c1", "Dr GeneralB", start) != key
        assert booking_request_id("c1", "Dr GeneralA", datetime(2024, 1, 16, 11, 0)) != key
