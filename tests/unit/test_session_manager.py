"""Tests for the session store, state machine and sweeper."""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, patch
from datetime import date, datetime, timedelta

from app.core.intelligence.dates.parser import DateTimePreference, TimeOfDay
from app.core.intelligence.session.manager import (
    SESSION_PREFIX,
    MemorySessionBackend,
    RedisSessionBackend,
    SessionManager,
)
from app.core.intelligence.session.models import (
    BookingRef,
    ConfirmationStatus,
    ConversationSession,
    InvalidTransitionError,
    ProposedSlot,
    SessionInvariantError,
)
from app.core.intelligence.session.state import (
    ConversationState,
    can_transition,
    is_awaiting_decision,
    is_collecting_state,
)
from app.core.intelligence.session.sweeper import SessionSweeper


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_slot() -> ProposedSlot:
    return ProposedSlot("Dr GeneralA", datetime(2024, 1, 16, 10), datetime(2024, 1, 16, 10, 30))


class TestConversationState:
    """Test state machine edges."""

    def test_booking_path(self):
        assert can_transition(ConversationState.IDLE, ConversationState.COLLECTING_NAME)
        assert can_transition(ConversationState.COLLECTING_NAME, ConversationState.SLOT_PROPOSED)
        assert can_transition(ConversationState.SLOT_PROPOSED, ConversationState.CONFIRMED)

    def test_cancel_path(self):
        assert can_transition(ConversationState.IDLE, ConversationState.CANCEL_LOOKUP_PENDING)
        assert can_transition(
            ConversationState.CANCEL_LOOKUP_PENDING, ConversationState.CANCEL_CONFIRM_PENDING
        )
        assert can_transition(ConversationState.CANCEL_CONFIRM_PENDING, ConversationState.CANCELLED)

    def test_cannot_confirm_without_proposal(self):
        assert not can_transition(ConversationState.IDLE, ConversationState.CONFIRMED)
        assert not can_transition(ConversationState.COLLECTING_NAME, ConversationState.CONFIRMED)

    def test_cannot_cancel_without_confirmation_step(self):
        assert not can_transition(ConversationState.CANCEL_LOOKUP_PENDING, ConversationState.CANCELLED)
        assert not can_transition(ConversationState.IDLE, ConversationState.CANCELLED)

    def test_pending_cancellation_does_not_start_booking(self):
        assert not can_transition(
            ConversationState.CANCEL_CONFIRM_PENDING, ConversationState.SLOT_PROPOSED
        )

    def test_reschedule_continues_into_booking(self):
        assert can_transition(
            ConversationState.RESCHEDULE_CONFIRM_PENDING, ConversationState.SLOT_PROPOSED
        )
        assert can_transition(
            ConversationState.RESCHEDULE_CONFIRM_PENDING, ConversationState.COLLECTING_NAME
        )

    def test_helpers(self):
        assert is_awaiting_decision(ConversationState.SLOT_PROPOSED)
        assert not is_awaiting_decision(ConversationState.IDLE)
        assert is_collecting_state(ConversationState.COLLECTING_TOOTH_COUNT)
        assert not is_collecting_state(ConversationState.CONFIRMED)


class TestConversationSession:
    """Test ConversationSession."""

    @pytest.fixture
    def session(self):
        return ConversationSession(conversation_id="+15551234567", contact_phone="+15551234567")

    def test_transition_refuses_illegal_edge(self, session):
        with pytest.raises(InvalidTransitionError):
            session.transition(ConversationState.CONFIRMED)
        assert session.state == ConversationState.IDLE

    def test_intents_ordered_without_duplicates(self, session):
        session.add_intent("booking")
        session.add_intent("cancel")
        session.add_intent("booking")
        assert session.intents == ["booking", "cancel"]

        session.drop_intent("booking")
        assert session.intents == ["cancel"]
        session.drop_intent("booking")

    def test_propose_and_confirm(self, session):
        session.propose(make_slot())
        assert session.confirmation_status == ConfirmationStatus.PENDING

        session.confirm("evt-1")
        assert session.confirmation_status == ConfirmationStatus.CONFIRMED
        assert session.event_id == "evt-1"

    def test_confirm_requires_slot_and_reference(self, session):
        with pytest.raises(SessionInvariantError):
            session.confirm("evt-1")

        session.propose(make_slot())
        with pytest.raises(SessionInvariantError):
            session.confirm("")

    def test_validate_confirmed_without_reference(self, session):
        session.confirmation_status = ConfirmationStatus.CONFIRMED
        with pytest.raises(SessionInvariantError):
            session.validate()

    def test_validate_proposed_without_slot(self, session):
        session.state = ConversationState.SLOT_PROPOSED
        with pytest.raises(SessionInvariantError):
            session.validate()

    def test_reset_booking_keeps_name(self, session):
        session.patient_name = "Jane Doe"
        session.treatment = "Cleaning"
        session.tooth_count = 2
        session.propose(make_slot())

        session.reset_booking()

        assert session.patient_name == "Jane Doe"
        assert session.treatment is None
        assert session.tooth_count is None
        assert session.selected_slot is None
        assert session.confirmation_status is None

    def test_history_trimmed(self, session):
        session.max_messages = 3
        for i in range(5):
            session.add_message("user", f"message {i}")

        assert [m.text for m in session.messages] == ["message 2", "message 3", "message 4"]
        assert session.recent_history(limit=2) == [
            {"role": "user", "text": "message 3"},
            {"role": "user", "text": "message 4"},
        ]

    def test_json_round_trip(self, session):
        session.state = ConversationState.SLOT_PROPOSED
        session.add_intent("booking")
        session.patient_name = "Jane Doe"
        session.propose(make_slot())
        session.existing_booking = BookingRef(
            practitioner="Dr GeneralB",
            patient_name="Jane Doe",
            patient_phone="+15551234567",
            treatment="Cleaning",
            start=datetime(2024, 1, 20, 9),
            end=datetime(2024, 1, 20, 9, 30),
            event_id="evt-9",
        )
        session.preference = DateTimePreference(date=date(2024, 1, 16), time=TimeOfDay(10, 0))
        session.add_message("user", "hi")

        restored = ConversationSession.from_json(session.to_json())

        assert restored.preference == session.preference

        assert restored.state == ConversationState.SLOT_PROPOSED
        assert restored.selected_slot == session.selected_slot
        assert restored.confirmation_status == ConfirmationStatus.PENDING
        assert restored.existing_booking == session.existing_booking
        assert restored.messages[0].text == "hi"


class TestSessionManager:
    """Test SessionManager with the in-memory backend."""

    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 1, 15, 9, 0))

    @pytest.fixture
    def manager(self, clock):
        return SessionManager(
            backend=MemorySessionBackend(),
            timeout=timedelta(minutes=10),
            clock=clock,
            max_messages=20,
        )

    @pytest.mark.asyncio
    async def test_get_creates_session(self, manager, clock):
        session = await manager.get("+15551234567")

        assert session.conversation_id == "+15551234567"
        assert session.contact_phone == "+15551234567"
        assert session.state == ConversationState.IDLE
        assert session.created_at == clock.now
        assert session.max_messages == 20

    @pytest.mark.asyncio
    async def test_get_returns_existing_session(self, manager):
        first = await manager.get("conv-1", "+15551234567")
        first.patient_name = "Jane"
        await manager.save(first)

        second = await manager.get("conv-1")

        assert second.patient_name == "Jane"
        assert second.contact_phone == "+15551234567"

    @pytest.mark.asyncio
    async def test_expired_session_replaced(self, manager, clock):
        session = await manager.get("conv-1")
        session.patient_name = "Jane"
        await manager.save(session)

        clock.advance(minutes=11)
        fresh = await manager.get("conv-1")

        assert fresh.patient_name is None
        assert fresh.created_at == clock.now

    @pytest.mark.asyncio
    async def test_activity_extends_lifetime(self, manager, clock):
        await manager.get("conv-1")
        clock.advance(minutes=8)
        session = await manager.get("conv-1")
        session.patient_name = "Jane"
        await manager.save(session)
        clock.advance(minutes=8)

        assert (await manager.get("conv-1")).patient_name == "Jane"

    @pytest.mark.asyncio
    async def test_unsaved_changes_are_not_persisted(self, manager):
        """A turn that fails before save() leaves the stored session as it was."""
        session = await manager.get("conv-1")
        session.add_intent("cancel")
        session.transition(ConversationState.CANCEL_LOOKUP_PENDING)

        stored = await manager.peek("conv-1")

        assert stored.state == ConversationState.IDLE
        assert stored.intents == []
        assert stored is not session

    @pytest.mark.asyncio
    async def test_peek_does_not_touch(self, manager, clock):
        await manager.get("conv-1")
        clock.advance(minutes=5)

        session = await manager.peek("conv-1")

        assert session.last_activity == datetime(2024, 1, 15, 9, 0)
        assert await manager.peek("missing") is None

    @pytest.mark.asyncio
    async def test_peek_hides_expired(self, manager, clock):
        await manager.get("conv-1")
        clock.advance(minutes=30)
        assert await manager.peek("conv-1") is None

    @pytest.mark.asyncio
    async def test_save_validates(self, manager):
        session = await manager.get("conv-1")
        session.state = ConversationState.SLOT_PROPOSED

        with pytest.raises(SessionInvariantError):
            await manager.save(session)

    @pytest.mark.asyncio
    async def test_update(self, manager):
        session = await manager.update("conv-1", patient_name="Jane", treatment="Cleaning")

        assert session.patient_name == "Jane"
        assert (await manager.peek("conv-1")).treatment == "Cleaning"

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, manager):
        with pytest.raises(AttributeError):
            await manager.update("conv-1", favourite_colour="blue")

    @pytest.mark.asyncio
    async def test_append_message(self, manager, clock):
        session = await manager.append_message("conv-1", "user", "hello")

        assert session.messages[-1].text == "hello"
        assert session.messages[-1].timestamp == clock.now

    @pytest.mark.asyncio
    async def test_end(self, manager):
        await manager.get("conv-1")

        assert await manager.end("conv-1") is True
        assert await manager.end("conv-1") is False
        assert await manager.peek("conv-1") is None

    @pytest.mark.asyncio
    async def test_sweep_expired(self, manager, clock):
        await manager.get("old")
        clock.advance(minutes=9)
        await manager.get("recent")
        clock.advance(minutes=2)

        evicted = await manager.sweep_expired()

        assert evicted == 1
        assert await manager.count() == 1
        assert await manager.peek("recent") is not None


class TestRedisSessionBackend:
    """Test RedisSessionBackend with a mocked client."""

    @pytest.fixture
    def mock_redis(self):
        redis = AsyncMock()
        redis.get.return_value = None
        redis.delete.return_value = 1
        return redis

    @pytest.fixture
    def backend(self, mock_redis):
        return RedisSessionBackend(ttl_seconds=600, redis_client=mock_redis)

    @pytest.mark.asyncio
    async def test_store_sets_ttl(self, backend, mock_redis):
        session = ConversationSession(conversation_id="conv-1", patient_name="Jane")

        await backend.store(session)

        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == f"{SESSION_PREFIX}conv-1"
        assert ttl == 600
        assert json.loads(payload)["patient_name"] == "Jane"

    @pytest.mark.asyncio
    async def test_load(self, backend, mock_redis):
        mock_redis.get.return_value = ConversationSession(conversation_id="conv-1").to_json()

        session = await backend.load("conv-1")

        assert session.conversation_id == "conv-1"
        mock_redis.get.assert_called_once_with(f"{SESSION_PREFIX}conv-1")

    @pytest.mark.asyncio
    async def test_load_missing(self, backend):
        assert await backend.load("conv-1") is None

    @pytest.mark.asyncio
    async def test_remove(self, backend, mock_redis):
        assert await backend.remove("conv-1") is True
        mock_redis.delete.return_value = 0
        assert await backend.remove("conv-1") is False

    @pytest.mark.asyncio
    async def test_unavailable_redis_raises(self):
        backend = RedisSessionBackend(ttl_seconds=600)

        with patch(
            "app.core.intelligence.session.manager.get_redis",
            new=AsyncMock(return_value=None),
        ):
            with pytest.raises(ConnectionError):
                await backend.load("conv-1")


class TestSessionSweeper:
    """Test SessionSweeper."""

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            SessionSweeper(SessionManager(), interval_seconds=0)

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        manager = AsyncMock(spec=SessionManager)
        manager.sweep_expired.return_value = 0
        sweeper = SessionSweeper(manager, interval_seconds=0.01)

        sweeper.start()
        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.running
        assert manager.sweep_expired.await_count >= 1

    @pytest.mark.asyncio
    async def test_sweep_once_survives_errors(self):
        manager = AsyncMock(spec=SessionManager)
        manager.sweep_expired.side_effect = ConnectionError("redis down")
        sweeper = SessionSweeper(manager, interval_seconds=1)

        assert await sweeper.sweep_once() == 0

    @pytest.mark.asyncio
    async def test_evicts_expired_sessions(self):
        clock = FakeClock(datetime(2024, 1, 15, 9, 0))
        manager = SessionManager(timeout=timedelta(minutes=10), clock=clock)
        await manager.get("conv-1")
        clock.advance(minutes=15)

        assert await SessionSweeper(manager).sweep_once() == 1
        assert await manager.count() == 0
