"""
Scheduling Engine - Main Orchestrator.

Coordinates intent detection, entity extraction, the session store and
the calendar to process one patient message at a time:

    message -> slots + intents -> flow decision -> calendar calls -> reply

Turns for the same conversation are serialized with a per-conversation
lock; different conversations run concurrently. Every external call is
bounded by ``external_call_timeout_seconds``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional

import httpx

from app.config import settings
from app.core.intelligence import (
    ConversationSession,
    ConversationState,
    DetectionContext,
    Intent,
    IntentDetectionChain,
    InvalidTransitionError,
    ProposedSlot,
    SessionManager,
    extract_slots,
    get_intent_detector,
    get_session_manager,
)
from app.core.intelligence.slots.types import Treatment
from app.core.scheduling.allocator import appointment_window, select_slot
from app.core.scheduling.audit import AuditLogger, AuditStatus, get_audit_logger
from app.core.scheduling.availability import (
    AvailableSlot,
    BusyInterval,
    WorkingHours,
    clinic_now,
    compute_free_intervals,
    slots_for_practitioners,
)
from app.core.scheduling.calendar_client import (
    Booking,
    CalendarClient,
    CalendarError,
    EventResult,
    booking_request_id,
    get_calendar_client,
)
from app.core.scheduling.flow import (
    BOOKING_ACTIONS,
    Action,
    ConversationFlow,
    FlowAction,
    awaiting_field,
    get_conversation_flow,
    merge_slots,
)
from app.core.scheduling.pricing import PricingClient, get_pricing_client
from app.core.scheduling.response import ResponseGenerator, get_response_generator
from app.core.scheduling.treatment import (
    compute_duration,
    dentists_for,
    parse_treatment,
    performs,
    search_duration,
)

logger = logging.getLogger(__name__)

# Alternatives remembered on the session after a search
MAX_CANDIDATES = 5

# Transport failures of the calendar and pricing collaborators
UPSTREAM_ERRORS = (CalendarError, httpx.HTTPError, asyncio.TimeoutError)


class ConversationLocks:
    """Per-conversation locks, dropped once no turn holds or awaits them."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                del self._users[conversation_id]
                del self._locks[conversation_id]

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)


class SchedulingEngine:
    """
    Main orchestrator for the scheduling assistant.

    Coordinates:
    - Intent detection and entity extraction
    - Session state transitions
    - Availability search and calendar mutations
    - Audit records and response wording
    """

    def __init__(
        self,
        sessions: Optional[SessionManager] = None,
        calendar: Optional[CalendarClient] = None,
        intent_detector: Optional[IntentDetectionChain] = None,
        pricing: Optional[PricingClient] = None,
        audit: Optional[AuditLogger] = None,
        responses: Optional[ResponseGenerator] = None,
        flow: Optional[ConversationFlow] = None,
        clock=None,
        timeout: Optional[float] = None,
    ):
        """Initialize engine with optional dependencies.

        Args:
            sessions: Session store
            calendar: Calendar client
            intent_detector: Intent detection chain
            pricing: Pricing document client
            audit: Audit logger
            responses: Response templates
            flow: Conversation flow manager
            clock: Clinic wall-clock time source (naive datetimes)
            timeout: Limit for each external call in seconds
        """
        self._sessions = sessions
        self._calendar = calendar
        self._intent_detector = intent_detector
        self._pricing = pricing
        self._audit = audit
        self.responses = responses or get_response_generator()
        self._flow = flow or get_conversation_flow()
        self._clock = clock or (lambda: clinic_now(settings.clinic_timezone))
        self._timeout = timeout or settings.external_call_timeout_seconds
        self._working_hours = WorkingHours(settings.working_hours_start, settings.working_hours_end)
        self.locks = ConversationLocks()

    # === Collaborators ===

    @property
    def sessions(self) -> SessionManager:
        if self._sessions is None:
            self._sessions = get_session_manager()
        return self._sessions

    @property
    def calendar(self) -> CalendarClient:
        if self._calendar is None:
            self._calendar = get_calendar_client()
        return self._calendar

    @property
    def intent_detector(self) -> IntentDetectionChain:
        if self._intent_detector is None:
            self._intent_detector = get_intent_detector()
        return self._intent_detector

    @property
    def pricing(self) -> PricingClient:
        if self._pricing is None:
            self._pricing = get_pricing_client()
        return self._pricing

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    async def _external(self, call: Awaitable[Any]) -> Any:
        """Await a collaborator call under the external-call timeout."""
        return await asyncio.wait_for(call, timeout=self._timeout)

    # === Entry point ===

    async def handle_turn(self, conversation_id: str, contact_phone: Optional[str], text: str) -> str:
        """
        Process one patient message and return the reply.

        Never raises: unexpected failures are logged and answered with a
        generic apology.
        """
        try:
            async with self.locks.hold(conversation_id):
                return await self._process(conversation_id, contact_phone, text or "")
        except Exception:
            logger.exception(f"Unhandled error while processing turn for {conversation_id}")
            return self.responses.generic_error()

    async def _process(self, conversation_id: str, contact_phone: Optional[str], text: str) -> str:
        message = text.strip()
        session = await self.sessions.get(conversation_id, contact_phone)
        now = self._clock()

        slots = extract_slots(message, awaiting=awaiting_field(session.state))
        if slots.end_session:
            await self.sessions.end(conversation_id)
            return self.responses.session_cleared()

        session.add_message("user", message)

        detection = await self.intent_detector.detect(
            message,
            DetectionContext(
                recent_history=session.recent_history(),
                known_intents=list(session.intents),
                state=session.state.value,
            ),
        )
        decision = self._flow.decide(
            session,
            detection.intents,
            slots,
            message,
            reference=now,
            timezone_name=settings.clinic_timezone,
        )
        logger.info(
            f"Turn {conversation_id}: state={session.state.value} "
            f"intents={sorted(i.value for i in detection.intents)} "
            f"action={decision.action.value}"
        )

        if (
            decision.action == Action.CONTINUE_BOOKING
            and not session.has_intent(Intent.BOOKING.value)
            and session.state in (ConversationState.CONFIRMED, ConversationState.CANCELLED)
        ):
            # A new booking starts from scratch (the patient's name is kept)
            session.reset_booking()
        merge_slots(
            session,
            slots,
            booking=decision.action in BOOKING_ACTIONS,
            reference=now,
            timezone_name=settings.clinic_timezone,
        )
        reply = await self._execute(session, decision, now)

        addons = [reply]
        if decision.with_inquiry:
            addons.append(await self._appointment_details(session))
        if decision.with_pricing:
            addons.append(await self._pricing_text(session, slots.treatment))
        reply = self.responses.combine(*addons) or self.responses.greeting()

        session.add_message("assistant", reply)
        await self.sessions.save(session)
        return reply

    async def _execute(self, session: ConversationSession, decision: FlowAction, now: datetime) -> Optional[str]:
        action = decision.action

        if action == Action.CONTINUE_BOOKING:
            return await self._continue_booking(session, now)
        if action == Action.BOOK:
            return await self._book(session, now)
        if action == Action.DECLINE_SLOT:
            return await self._decline_slot(session, decision.search_again, now)
        if action == Action.REASK_SLOT:
            return self.responses.reask_slot()

        if action == Action.LOOKUP_CANCEL:
            return await self._lookup_cancel(session)
        if action == Action.CANCEL:
            return await self._cancel(session)
        if action == Action.KEEP_BOOKING:
            session.existing_booking = None
            session.drop_intent(Intent.CANCEL.value)
            self._move(session, ConversationState.IDLE)
            return self.responses.cancel_declined()
        if action == Action.REASK_CANCEL:
            return self.responses.reask_cancel()

        if action == Action.LOOKUP_RESCHEDULE:
            return await self._lookup_reschedule(session)
        if action == Action.SELECT_BOOKING:
            return self._select_booking(session, decision.selection)
        if action == Action.RESCHEDULE:
            return await self._reschedule(session, now)
        if action == Action.KEEP_RESCHEDULE:
            self._clear_reschedule(session)
            self._move(session, ConversationState.IDLE)
            return self.responses.cancel_declined()
        if action == Action.REASK_RESCHEDULE:
            return self.responses.reask_reschedule()

        # RESPOND: add-ons only, or a greeting when there are none
        if decision.with_pricing or decision.with_inquiry:
            return None
        if session.state == ConversationState.IDLE:
            return self.responses.greeting()
        return self.responses.anything_else()

    def _move(self, session: ConversationSession, state: ConversationState) -> bool:
        """Transition the session, logging and refusing illegal edges."""
        try:
            session.transition(state)
            return True
        except InvalidTransitionError as e:
            logger.warning(f"{session.conversation_id}: {e}")
            return False

    # === Booking ===

    async def _continue_booking(self, session: ConversationSession, now: datetime) -> str:
        """Collect what is missing, then search and propose a slot."""
        session.add_intent(Intent.BOOKING.value)

        if session.state == ConversationState.COLLECTING_NAME and not session.patient_name:
            return self.responses.invalid_name()

        treatment = parse_treatment(session.treatment)
        if treatment is None:
            treatment = Treatment.CONSULTATION
            session.treatment = treatment.value

        if session.practitioner and not performs(session.practitioner, treatment):
            logger.info(f"{session.practitioner} does not perform {treatment.value}")
            session.practitioner = None
            self._move(session, ConversationState.COLLECTING_PRACTITIONER)
            return self.responses.ask_practitioner(dentists_for(treatment), treatment.value)

        if (
            treatment == Treatment.FILLING
            and session.tooth_count is None
            and session.state != ConversationState.COLLECTING_TOOTH_COUNT
        ):
            self._move(session, ConversationState.COLLECTING_TOOTH_COUNT)
            return self.responses.ask_tooth_count()

        return await self._search_and_propose(session, treatment, now)

    async def _search_and_propose(
        self,
        session: ConversationSession,
        treatment: Treatment,
        now: datetime,
        prefix: Optional[str] = None,
    ) -> str:
        """Find the best slot for the collected preferences and propose it."""
        session.clear_selection()
        duration = search_duration(treatment, session.practitioner, session.tooth_count)

        try:
            free = await self._find_free_slots(session, treatment, duration, now)
        except UPSTREAM_ERRORS as e:
            logger.error(f"Availability search failed for {session.conversation_id}: {e}")
            self._move(session, ConversationState.COLLECTING_PREFERENCES)
            return self.responses.combine(prefix, self.responses.availability_error())

        slot = select_slot(free, session.preference, duration)
        session.candidate_slots = [
            ProposedSlot(s.practitioner, s.start, s.end) for s in free[:MAX_CANDIDATES]
        ]
        if slot is None:
            logger.info(f"No {duration} min slot found for {session.conversation_id}")
            self._move(session, ConversationState.COLLECTING_PREFERENCES)
            return self.responses.combine(prefix, self.responses.no_slot())

        # The slot decides the dentist, which may change the duration
        final_duration = compute_duration(treatment, slot.practitioner, session.tooth_count)
        start, end = appointment_window(slot, final_duration)
        session.duration_minutes = final_duration

        if not session.patient_name:
            self._move(session, ConversationState.COLLECTING_NAME)
            return self.responses.combine(prefix, self.responses.ask_name())

        proposed = ProposedSlot(slot.practitioner, start, end)
        if not self._move(session, ConversationState.SLOT_PROPOSED):
            return self.responses.combine(prefix, self.responses.generic_error())
        session.propose(proposed)
        return self.responses.combine(prefix, self.responses.propose_slot(proposed, final_duration))

    async def _find_free_slots(
        self,
        session: ConversationSession,
        treatment: Treatment,
        duration: int,
        now: datetime,
    ) -> list[AvailableSlot]:
        practitioners = [session.practitioner] if session.practitioner else dentists_for(treatment)
        range_end = now + timedelta(days=settings.booking_horizon_days)

        busy_by_practitioner: dict[str, list[BusyInterval]] = {}
        for practitioner in practitioners:
            busy = await self._external(self.calendar.list_busy(practitioner, now, range_end))
            excluded = session.excluded_slot
            if excluded is not None and excluded.practitioner == practitioner:
                # The slot being rescheduled away from is not offered again
                busy = busy + [BusyInterval(excluded.start, excluded.end)]
            busy_by_practitioner[practitioner] = busy

        free = slots_for_practitioners(
            busy_by_practitioner,
            range_start=now,
            range_end=range_end,
            now=now,
            working_hours=self._working_hours,
            min_duration_minutes=settings.min_slot_minutes,
        )
        return [s for s in free if s.duration_minutes >= duration]

    async def _slot_still_free(self, slot: ProposedSlot, now: datetime) -> bool:
        """Re-check a proposed window against fresh calendar data."""
        day_start = datetime.combine(slot.start.date(), datetime.min.time())
        day_end = day_start + timedelta(days=1)
        busy = await self._external(self.calendar.list_busy(slot.practitioner, day_start, day_end))
        free = compute_free_intervals(
            busy,
            range_start=day_start,
            range_end=day_end,
            now=now,
            working_hours=self._working_hours,
            min_duration_minutes=settings.min_slot_minutes,
            practitioner=slot.practitioner,
        )
        return any(f.start <= slot.start and slot.end <= f.end for f in free)

    async def _book(self, session: ConversationSession, now: datetime) -> str:
        """Create the calendar event for the accepted slot."""
        slot = session.selected_slot
        treatment = parse_treatment(session.treatment) or Treatment.CONSULTATION

        try:
            still_free = await self._slot_still_free(slot, now)
        except UPSTREAM_ERRORS as e:
            logger.error(f"Slot re-validation failed for {session.conversation_id}: {e}")
            return self.responses.availability_error()

        if not still_free:
            logger.info(f"Proposed slot vanished for {session.conversation_id}, offering another")
            session.clear_selection()
            self._move(session, ConversationState.COLLECTING_PREFERENCES)
            return await self._search_and_propose(
                session, treatment, now, prefix=self.responses.slot_taken()
            )

        booking = Booking(
            practitioner=slot.practitioner,
            patient_name=session.patient_name or "",
            patient_phone=session.contact_phone,
            treatment=treatment.value,
            start=slot.start,
            end=slot.end,
            request_id=booking_request_id(session.conversation_id, slot.practitioner, slot.start),
        )
        try:
            result: EventResult = await self._external(self.calendar.create_event(slot.practitioner, booking))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Event creation failed for {session.conversation_id}: {e}")
            result = EventResult(success=False, error_code="timeout", message=str(e))

        if result.error_code == "timeout":
            result = await self._find_created_event(booking, result)

        if not result.success or not result.event_id:
            self._record(session, AuditStatus.NEEDS_FOLLOW_UP, "booking_failed", slot=slot,
                         error=result.message or result.error_code)
            session.clear_selection()
            session.drop_intent(Intent.BOOKING.value)
            self._move(session, ConversationState.IDLE)
            return self.responses.booking_failed()

        session.confirm(result.event_id)
        self._move(session, ConversationState.CONFIRMED)
        session.drop_intent(Intent.BOOKING.value)
        session.excluded_slot = None
        self._record(session, AuditStatus.CONFIRMED, "appointment_booked", slot=slot, event_id=result.event_id)
        return self.responses.booking_confirmed(slot, treatment.value)

    async def _decline_slot(self, session: ConversationSession, search_again: bool, now: datetime) -> str:
        session.clear_selection()
        self._move(session, ConversationState.COLLECTING_PREFERENCES)
        if search_again:
            treatment = parse_treatment(session.treatment) or Treatment.CONSULTATION
            return await self._search_and_propose(session, treatment, now)
        return self.responses.slot_declined()

    # === Cancellation ===

    async def _lookup_cancel(self, session: ConversationSession) -> str:
        session.add_intent(Intent.CANCEL.value)
        self._move(session, ConversationState.CANCEL_LOOKUP_PENDING)

        try:
            found = await self._external(self.calendar.find_booking_by_contact(session.contact_phone))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Booking lookup failed for {session.conversation_id}: {e}")
            session.drop_intent(Intent.CANCEL.value)
            self._move(session, ConversationState.IDLE)
            return self.responses.availability_error()

        if found is None:
            session.drop_intent(Intent.CANCEL.value)
            self._move(session, ConversationState.IDLE)
            return self.responses.cancel_not_found()

        session.existing_booking = found.to_ref()
        self._move(session, ConversationState.CANCEL_CONFIRM_PENDING)
        return self.responses.confirm_cancel(session.existing_booking)

    async def _cancel(self, session: ConversationSession) -> str:
        ref = session.existing_booking
        session.existing_booking = None
        session.drop_intent(Intent.CANCEL.value)

        if ref is None:
            self._move(session, ConversationState.IDLE)
            return self.responses.cancel_not_found()

        result = await self._delete_event(ref.practitioner, ref.event_id)
        slot = ProposedSlot(ref.practitioner, ref.start, ref.end)

        if not result.success:
            self._record(session, AuditStatus.NEEDS_FOLLOW_UP, "cancellation_failed", slot=slot,
                         event_id=ref.event_id, patient_name=ref.patient_name,
                         error=result.message or result.error_code)
            self._move(session, ConversationState.IDLE)
            return self.responses.cancel_failed()

        self._record(session, AuditStatus.CANCELLED, "appointment_cancelled", slot=slot,
                     event_id=ref.event_id, patient_name=ref.patient_name)
        if session.event_id == ref.event_id:
            # The booking made earlier in this conversation no longer exists
            session.reset_booking()
        self._move(session, ConversationState.CANCELLED)
        return self.responses.cancelled()

    async def _find_created_event(self, booking: Booking, failed: EventResult) -> EventResult:
        """Look for an event committed by a create call that timed out."""
        try:
            found = await self._external(self.calendar.find_bookings_by_contact(booking.patient_phone))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Lookup after create timeout failed for {booking.patient_phone}: {e}")
            return failed

        for existing in found:
            if (existing.practitioner == booking.practitioner
                    and existing.start == booking.start and existing.end == booking.end):
                logger.info(f"Event {existing.event_id} was created despite the timeout")
                return EventResult(success=True, event_id=existing.event_id, message="Event created")
        return failed

    async def _delete_event(self, practitioner: str, event_id: str) -> EventResult:
        result = await self._try_delete(practitioner, event_id)
        if result.error_code != "timeout":
            return result

        # The first attempt may have gone through, so a missing event is fine
        logger.info(f"Retrying deletion of {event_id} after timeout")
        retry = await self._try_delete(practitioner, event_id)
        if retry.error_code == "not_found":
            return EventResult(success=True, event_id=event_id, message="Event deleted")
        return retry

    async def _try_delete(self, practitioner: str, event_id: str) -> EventResult:
        try:
            return await self._external(self.calendar.delete_event(practitioner, event_id))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Event deletion failed for {event_id}: {e}")
            return EventResult(success=False, error_code="timeout", message=str(e))

    # === Reschedule ===

    async def _lookup_reschedule(self, session: ConversationSession) -> str:
        session.add_intent(Intent.RESCHEDULE.value)

        try:
            found = await self._external(self.calendar.find_bookings_by_contact(session.contact_phone))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Booking lookup failed for {session.conversation_id}: {e}")
            self._clear_reschedule(session)
            self._move(session, ConversationState.IDLE)
            return self.responses.availability_error()

        if not found:
            self._record(session, AuditStatus.NEEDS_FOLLOW_UP, "reschedule_booking_not_found",
                         intent=Intent.RESCHEDULE.value)
            self._clear_reschedule(session)
            self._move(session, ConversationState.IDLE)
            return self.responses.reschedule_not_found()

        if len(found) == 1:
            session.existing_booking = found[0].to_ref()
            self._move(session, ConversationState.RESCHEDULE_CONFIRM_PENDING)
            return self.responses.confirm_reschedule(session.existing_booking)

        session.existing_bookings = [b.to_ref() for b in found]
        self._move(session, ConversationState.RESCHEDULE_SELECT_PENDING)
        return self.responses.choose_booking(session.existing_bookings)

    def _select_booking(self, session: ConversationSession, selection: Optional[int]) -> str:
        if selection is None or not 0 <= selection < len(session.existing_bookings):
            return self.responses.choose_booking(session.existing_bookings)

        session.existing_booking = session.existing_bookings[selection]
        session.existing_bookings = []
        self._move(session, ConversationState.RESCHEDULE_CONFIRM_PENDING)
        return self.responses.confirm_reschedule(session.existing_booking)

    async def _reschedule(self, session: ConversationSession, now: datetime) -> str:
        """Cancel the old booking, then continue straight into booking."""
        ref = session.existing_booking
        if ref is None:
            self._clear_reschedule(session)
            self._move(session, ConversationState.IDLE)
            return self.responses.reschedule_not_found()

        result = await self._delete_event(ref.practitioner, ref.event_id)
        old_slot = ProposedSlot(ref.practitioner, ref.start, ref.end)

        if not result.success:
            self._record(session, AuditStatus.NEEDS_FOLLOW_UP, "reschedule_cancel_failed", slot=old_slot,
                         event_id=ref.event_id, patient_name=ref.patient_name,
                         error=result.message or result.error_code)
            self._clear_reschedule(session)
            self._move(session, ConversationState.IDLE)
            return self.responses.reschedule_failed()

        self._record(session, AuditStatus.RESCHEDULED, "old_appointment_cancelled", slot=old_slot,
                     event_id=ref.event_id, patient_name=ref.patient_name)
        self._clear_reschedule(session)

        session.reset_booking()
        session.treatment = ref.treatment or None
        session.patient_name = session.patient_name or ref.patient_name or None
        session.excluded_slot = old_slot
        session.add_intent(Intent.BOOKING.value)

        reply = await self._continue_booking(session, now)
        return self.responses.combine(self.responses.old_booking_cancelled(), reply)

    def _clear_reschedule(self, session: ConversationSession) -> None:
        session.existing_booking = None
        session.existing_bookings = []
        session.drop_intent(Intent.RESCHEDULE.value)

    # === Add-ons ===

    async def _appointment_details(self, session: ConversationSession) -> str:
        try:
            found = await self._external(self.calendar.find_booking_by_contact(session.contact_phone))
        except UPSTREAM_ERRORS as e:
            logger.error(f"Appointment inquiry failed for {session.conversation_id}: {e}")
            return self.responses.availability_error()
        return self.responses.appointment_details(found.to_ref() if found else None)

    async def _pricing_text(self, session: ConversationSession, mentioned: Optional[Treatment]) -> str:
        treatment = mentioned.value if mentioned else session.treatment
        try:
            text = await self._external(self.pricing.get_pricing(treatment))
        except UPSTREAM_ERRORS as e:
            logger.warning(f"Pricing lookup failed: {e}")
            return self.responses.pricing_unavailable()
        return self.responses.pricing(text)

    def _record(
        self,
        session: ConversationSession,
        status: AuditStatus,
        action: str,
        slot: Optional[ProposedSlot] = None,
        **details: Any,
    ) -> None:
        details.setdefault("patient_name", session.patient_name)
        if slot is not None:
            details.update(practitioner=slot.practitioner, start=slot.start, end=slot.end)
        self.audit.record(
            conversation_id=session.conversation_id,
            phone=session.contact_phone,
            status=status,
            action=action,
            **details,
        )


# Singleton
_engine: Optional[SchedulingEngine] = None


def get_scheduling_engine() -> SchedulingEngine:
    """Get singleton SchedulingEngine."""
    global _engine
    if _engine is None:
        _engine = SchedulingEngine()
    return _engine


async def handle_turn(conversation_id: str, contact_phone: Optional[str], text: str) -> str:
    """Convenience function to process one message."""
    return await get_scheduling_engine().handle_turn(conversation_id, contact_phone, text)
