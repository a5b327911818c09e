"""
Calendar clients.

The external calendar is the authoritative store of appointments. Each
dentist has one calendar; booked events carry a structured title so they
can be found again by the patient's phone number:

    ##AI Booked## {dentist} {patient} {treatment} {phone}

Two implementations:
- HttpCalendarClient: REST calendar service over httpx
- InMemoryCalendar: process-local calendar for development and tests
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

from app.config import get_settings
from app.core.intelligence.session.models import BookingRef
from app.core.intelligence.slots.types import Treatment
from app.core.scheduling.availability import BusyInterval, clinic_now

logger = logging.getLogger(__name__)

TITLE_PREFIX = "##AI Booked##"

# Shortest digit string accepted for a suffix match
MIN_SUFFIX_DIGITS = 7
_TITLE_RE = re.compile(rf"^\s*{re.escape(TITLE_PREFIX)}\s+(.+?)\s*$")


class CalendarError(Exception):
    """Raised when the calendar service cannot be read."""
    pass


@dataclass
class Booking:
    """An appointment as stored on a dentist's calendar."""

    practitioner: str
    patient_name: str
    patient_phone: str
    treatment: str
    start: datetime
    end: datetime
    event_id: str = ""
    calendar_ref: str = ""
    # Idempotency key sent with create requests
    request_id: str = ""

    def to_ref(self) -> BookingRef:
        """Copy into the session's booking record."""
        return BookingRef(
            practitioner=self.practitioner,
            patient_name=self.patient_name,
            patient_phone=self.patient_phone,
            treatment=self.treatment,
            start=self.start,
            end=self.end,
            event_id=self.event_id,
            calendar_ref=self.calendar_ref,
        )

    @classmethod
    def from_ref(cls, ref: BookingRef) -> "Booking":
        return cls(
            practitioner=ref.practitioner,
            patient_name=ref.patient_name,
            patient_phone=ref.patient_phone,
            treatment=ref.treatment,
            start=ref.start,
            end=ref.end,
            event_id=ref.event_id,
            calendar_ref=ref.calendar_ref,
        )


@dataclass
class EventResult:
    """Result of a calendar mutation."""

    success: bool
    event_id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None


# === Phone numbers ===

def normalize_phone(phone: Optional[str]) -> str:
    """Keep digits only: "+1 (555) 123-4567" -> "15551234567"."""
    return re.sub(r"\D", "", phone or "")


def phone_matches(stored: Optional[str], query: Optional[str]) -> bool:
    """
    Compare two phone numbers by their digits.

    Falls back to a suffix match so a number with a country code still
    matches the same number without it. The shorter side must have at
    least MIN_SUFFIX_DIGITS digits.
    """
    a = normalize_phone(stored)
    b = normalize_phone(query)
    if not a or not b:
        return False
    if a == b:
        return True
    if min(len(a), len(b)) < MIN_SUFFIX_DIGITS:
        return False
    return a.endswith(b) or b.endswith(a)


def booking_request_id(conversation_id: str, practitioner: str, start: datetime) -> str:
    """Deterministic idempotency key for one booking attempt."""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{conversation_id}|{practitioner}|{start.isoformat()}").hex


# === Event titles ===

def format_event_title(practitioner: str, patient_name: str, treatment: str, phone: str) -> str:
    return f"{TITLE_PREFIX} {practitioner} {patient_name} {treatment} {phone}"


def parse_event_title(
    title: str,
    practitioners: Optional[list[str]] = None,
) -> Optional[tuple[str, str, str, str]]:
    """
    Split an event title into (dentist, patient, treatment, phone).

    Dentist and treatment names contain spaces, so both are matched
    against the known names first; unknown names fall back to a single
    word. Returns None for titles not written by this assistant.
    """
    match = _TITLE_RE.match(title or "")
    if not match:
        return None
    body = match.group(1)

    # Phone is always the last token
    head, _, phone = body.rpartition(" ")
    if not head or not phone:
        return None

    practitioner = None
    for name in sorted(practitioners or [], key=len, reverse=True):
        if head.startswith(name + " "):
            practitioner = name
            head = head[len(name):].strip()
            break
    if practitioner is None:
        practitioner, _, head = head.partition(" ")

    treatment = None
    for value in sorted((t.value for t in Treatment), key=len, reverse=True):
        if head.endswith(" " + value):
            treatment = value
            head = head[: -len(value)].strip()
            break
    if treatment is None:
        head, _, treatment = head.rpartition(" ")

    patient = head.strip()
    if not practitioner or not patient or not treatment:
        return None
    return practitioner, patient, treatment, phone


def booking_from_event(
    practitioner: str,
    event_id: str,
    title: str,
    start: datetime,
    end: datetime,
    calendar_ref: str = "",
    practitioners: Optional[list[str]] = None,
) -> Optional[Booking]:
    """Build a Booking from a calendar event, or None for foreign events."""
    parsed = parse_event_title(title, practitioners)
    if parsed is None:
        return None
    _, patient, treatment, phone = parsed
    return Booking(
        practitioner=practitioner,
        patient_name=patient,
        patient_phone=phone,
        treatment=treatment,
        start=start,
        end=end,
        event_id=event_id,
        calendar_ref=calendar_ref,
    )


class CalendarClient:
    """
    Calendar interface used by the scheduling engine.

    Subclasses implement list_busy, create_event, delete_event and
    list_bookings; contact lookups are derived from list_bookings.
    """

    def __init__(self, practitioners: Optional[list[str]] = None, clock=None):
        settings = get_settings()
        self.practitioners = list(practitioners or settings.all_dentists)
        self._clock = clock or (lambda: clinic_now(settings.clinic_timezone))
        self._lookup_days = settings.lookup_horizon_days

    async def list_busy(self, practitioner: str, start: datetime, end: datetime) -> list[BusyInterval]:
        raise NotImplementedError

    async def create_event(self, practitioner: str, booking: Booking) -> EventResult:
        raise NotImplementedError

    async def delete_event(self, practitioner: str, event_id: str) -> EventResult:
        raise NotImplementedError

    async def list_bookings(self, start: datetime, end: datetime) -> list[Booking]:
        raise NotImplementedError

    async def find_bookings_by_contact(self, phone: str) -> list[Booking]:
        """Upcoming bookings for a phone number, soonest first."""
        now = self._clock()
        bookings = await self.list_bookings(now, now + timedelta(days=self._lookup_days))
        found = [b for b in bookings if phone_matches(b.patient_phone, phone)]
        found.sort(key=lambda b: b.start)
        return found

    async def find_booking_by_contact(self, phone: str) -> Optional[Booking]:
        """Soonest upcoming booking for a phone number, or None."""
        bookings = await self.find_bookings_by_contact(phone)
        return bookings[0] if bookings else None

    async def close(self) -> None:
        """Release resources held by the client."""
        return None


@dataclass
class _StoredEvent:
    event_id: str
    title: str
    start: datetime
    end: datetime


class InMemoryCalendar(CalendarClient):
    """Process-local calendar; refuses overlapping events."""

    def __init__(self, practitioners: Optional[list[str]] = None, clock=None):
        super().__init__(practitioners, clock)
        self._events: dict[str, dict[str, _StoredEvent]] = {p: {} for p in self.practitioners}
        self._requests: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def add_busy(self, practitioner: str, start: datetime, end: datetime, title: str = "Busy") -> str:
        """Block time on a calendar (seeding helper)."""
        event_id = uuid.uuid4().hex
        self._events.setdefault(practitioner, {})[event_id] = _StoredEvent(event_id, title, start, end)
        return event_id

    async def list_busy(self, practitioner: str, start: datetime, end: datetime) -> list[BusyInterval]:
        async with self._lock:
            events = list(self._events.get(practitioner, {}).values())
        return sorted(
            (BusyInterval(e.start, e.end, e.event_id) for e in events if e.end > start and e.start < end),
            key=lambda b: b.start,
        )

    async def create_event(self, practitioner: str, booking: Booking) -> EventResult:
        async with self._lock:
            calendar = self._events.get(practitioner)
            if calendar is None:
                return EventResult(
                    success=False,
                    error_code="unknown_calendar",
                    message=f"No calendar for {practitioner}",
                )
            if booking.request_id in self._requests and self._requests[booking.request_id] in calendar:
                event_id = self._requests[booking.request_id]
                return EventResult(success=True, event_id=event_id, message="Event already created")
            for event in calendar.values():
                if event.start < booking.end and booking.start < event.end:
                    return EventResult(
                        success=False,
                        error_code="conflict",
                        message="Time is no longer free",
                    )
            event_id = uuid.uuid4().hex
            title = format_event_title(
                practitioner, booking.patient_name, booking.treatment, booking.patient_phone
            )
            calendar[event_id] = _StoredEvent(event_id, title, booking.start, booking.end)
            if booking.request_id:
                self._requests[booking.request_id] = event_id

        logger.info(f"Event created on {practitioner}: {event_id}")
        return EventResult(success=True, event_id=event_id, message="Event created")

    async def delete_event(self, practitioner: str, event_id: str) -> EventResult:
        async with self._lock:
            removed = self._events.get(practitioner, {}).pop(event_id, None)
        if removed is None:
            return EventResult(success=False, error_code="not_found", message="Event not found")
        logger.info(f"Event deleted on {practitioner}: {event_id}")
        return EventResult(success=True, event_id=event_id, message="Event deleted")

    async def list_bookings(self, start: datetime, end: datetime) -> list[Booking]:
        async with self._lock:
            snapshot = {p: list(events.values()) for p, events in self._events.items()}
        bookings = []
        for practitioner, events in snapshot.items():
            for event in events:
                if event.end <= start or event.start >= end:
                    continue
                booking = booking_from_event(
                    practitioner, event.event_id, event.title, event.start, event.end,
                    calendar_ref=practitioner, practitioners=self.practitioners,
                )
                if booking is not None:
                    bookings.append(booking)
        return bookings


class HttpCalendarClient(CalendarClient):
    """
    HTTP client for the calendar service.

    The service exposes one calendar per dentist:
    - GET /calendars/{ref}/events?timeMin=&timeMax= - List events
    - POST /calendars/{ref}/events - Create event
    - DELETE /calendars/{ref}/events/{id} - Delete event

    Event times are exchanged as ISO 8601; offset-aware values are
    converted to the clinic wall clock.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        practitioners: Optional[list[str]] = None,
        calendar_refs: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=None,
    ):
        """Initialize client.

        Args:
            base_url: Calendar service base URL (defaults to settings)
            timeout: Request timeout in seconds
            practitioners: Dentists whose calendars are read
            calendar_refs: Dentist name -> calendar ref (defaults to settings)
            transport: Optional httpx transport (for testing)
        """
        super().__init__(practitioners, clock)
        settings = get_settings()
        self.base_url = base_url or settings.calendar_api_url
        self.timeout = timeout or settings.external_call_timeout_seconds
        self._refs = calendar_refs if calendar_refs is not None else settings.dentist_calendar_map
        self._tz = ZoneInfo(settings.clinic_timezone)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def calendar_ref(self, practitioner: str) -> str:
        return self._refs.get(practitioner, practitioner)

    def _parse_time(self, value) -> datetime:
        if isinstance(value, dict):
            value = value.get("dateTime") or value.get("date")
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(self._tz).replace(tzinfo=None)
        return parsed

    async def _list_events(self, practitioner: str, start: datetime, end: datetime) -> list[dict]:
        client = await self._get_client()
        ref = self.calendar_ref(practitioner)

        try:
            response = await client.get(
                f"/calendars/{ref}/events",
                params={"timeMin": start.isoformat(), "timeMax": end.isoformat()},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to list events for {practitioner}: {e}")
            raise CalendarError(f"Could not read calendar of {practitioner}") from e

        if isinstance(data, dict):
            data = data.get("items", data.get("events", []))
        if not isinstance(data, list):
            logger.error(f"Unexpected event list for {practitioner}: {type(data).__name__}")
            raise CalendarError(f"Malformed event list from calendar of {practitioner}")
        return data

    async def list_busy(self, practitioner: str, start: datetime, end: datetime) -> list[BusyInterval]:
        """Busy intervals on a dentist's calendar.

        Raises:
            CalendarError: If the calendar cannot be read
        """
        events = await self._list_events(practitioner, start, end)
        busy = []
        for event in events:
            try:
                busy.append(
                    BusyInterval(
                        start=self._parse_time(event["start"]),
                        end=self._parse_time(event["end"]),
                        event_id=event.get("id"),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed event on {practitioner}: {e}")
        busy.sort(key=lambda b: b.start)
        return busy

    async def create_event(self, practitioner: str, booking: Booking) -> EventResult:
        """Create an appointment event on a dentist's calendar."""
        client = await self._get_client()
        ref = self.calendar_ref(practitioner)

        payload = {
            "summary": format_event_title(
                practitioner, booking.patient_name, booking.treatment, booking.patient_phone
            ),
            "description": f"Patient: {booking.patient_name}\nPhone: {booking.patient_phone}",
            "start": booking.start.isoformat(),
            "end": booking.end.isoformat(),
            "timeZone": self._tz.key,
        }
        headers = {}
        if booking.request_id:
            payload["requestId"] = booking.request_id
            headers["Idempotency-Key"] = booking.request_id

        try:
            response = await client.post(f"/calendars/{ref}/events", json=payload, headers=headers)

            if response.status_code in (200, 201):
                data = response.json()
                return EventResult(
                    success=True,
                    event_id=data.get("id", data.get("event_id")),
                    message="Event created",
                )
            return EventResult(
                success=False,
                error_code=f"http_{response.status_code}",
                message=response.text[:200],
            )

        except httpx.TimeoutException as e:
            # The event may have been committed before the timeout
            logger.error(f"Timed out creating event for {practitioner}: {e}")
            return EventResult(success=False, error_code="timeout", message="Calendar service timed out")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to create event for {practitioner}: {e}")
            return EventResult(
                success=False,
                error_code="connection_error",
                message="Unable to connect to calendar service",
            )

    async def delete_event(self, practitioner: str, event_id: str) -> EventResult:
        """Delete an appointment event."""
        client = await self._get_client()
        ref = self.calendar_ref(practitioner)

        try:
            response = await client.delete(f"/calendars/{ref}/events/{event_id}")

            if response.status_code in (200, 204):
                return EventResult(success=True, event_id=event_id, message="Event deleted")
            if response.status_code in (404, 410):
                return EventResult(success=False, error_code="not_found", message="Event not found")
            return EventResult(
                success=False,
                error_code=f"http_{response.status_code}",
                message=response.text[:200],
            )

        except httpx.TimeoutException as e:
            logger.error(f"Timed out deleting event {event_id}: {e}")
            return EventResult(success=False, error_code="timeout", message="Calendar service timed out")
        except httpx.HTTPError as e:
            logger.error(f"Failed to delete event {event_id}: {e}")
            return EventResult(
                success=False,
                error_code="connection_error",
                message="Unable to connect to calendar service",
            )

    async def list_bookings(self, start: datetime, end: datetime) -> list[Booking]:
        """Bookings made by the assistant across all dentists.

        Raises:
            CalendarError: If any calendar cannot be read
        """
        bookings = []
        for practitioner in self.practitioners:
            for event in await self._list_events(practitioner, start, end):
                try:
                    booking = booking_from_event(
                        practitioner,
                        event.get("id", ""),
                        event.get("summary", ""),
                        self._parse_time(event["start"]),
                        self._parse_time(event["end"]),
                        calendar_ref=self.calendar_ref(practitioner),
                        practitioners=self.practitioners,
                    )
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed event on {practitioner}: {e}")
                    continue
                if booking is not None:
                    bookings.append(booking)
        return bookings


# Singleton
_client: Optional[CalendarClient] = None


def get_calendar_client() -> CalendarClient:
    """Get singleton calendar client (HTTP when a service URL is configured)."""
    global _client
    if _client is None:
        if get_settings().calendar_api_url:
            _client = HttpCalendarClient()
        else:
            logger.warning("CALENDAR_API_URL not set, using in-memory calendar")
            _client = InMemoryCalendar()
    return _client


async def close_calendar_client() -> None:
    """Close the singleton client if one was created."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
