"""Session store with idle-timeout expiry for conversation state."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from app.config import settings
from app.infra.redis import get_redis, APP_PREFIX
from .models import ConversationSession

logger = logging.getLogger(__name__)

# Session key prefix (extends existing APP_PREFIX)
SESSION_PREFIX = f"{APP_PREFIX}session:"


class SessionBackend(Protocol):
    """Where sessions are kept between turns."""

    async def load(self, conversation_id: str) -> Optional[ConversationSession]: ...

    async def store(self, session: ConversationSession) -> None: ...

    async def remove(self, conversation_id: str) -> bool: ...

    async def evict_expired(self, is_expired: Callable[[ConversationSession], bool]) -> list[str]: ...

    async def count(self) -> int: ...


class MemorySessionBackend:
    """
    Process-local session map guarded by an asyncio lock.

    Sessions are stored as serialized snapshots, so a turn that fails
    before save() leaves the stored session untouched.
    """

    def __init__(self):
        self._sessions: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def load(self, conversation_id: str) -> Optional[ConversationSession]:
        async with self._lock:
            data = self._sessions.get(conversation_id)
        return ConversationSession.from_dict(data) if data is not None else None

    async def store(self, session: ConversationSession) -> None:
        async with self._lock:
            self._sessions[session.conversation_id] = session.to_dict()

    async def remove(self, conversation_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(conversation_id, None) is not None

    async def evict_expired(self, is_expired: Callable[[ConversationSession], bool]) -> list[str]:
        async with self._lock:
            expired = [
                cid for cid, data in self._sessions.items()
                if is_expired(ConversationSession.from_dict(data))
            ]
            for cid in expired:
                del self._sessions[cid]
            return expired

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)


class RedisSessionBackend:
    """
    Redis-backed sessions.

    Key pattern: dental:v1:session:{conversation_id}

    Each write refreshes the key TTL to the session timeout, so Redis
    expires idle conversations on its own.
    """

    def __init__(self, ttl_seconds: int, redis_client: Any = None):
        self._ttl = ttl_seconds
        self._redis = redis_client

    def _key(self, conversation_id: str) -> str:
        """Generate Redis key."""
        return f"{SESSION_PREFIX}{conversation_id}"

    async def _client(self) -> Any:
        if self._redis is not None:
            return self._redis
        client = await get_redis()
        if client is None:
            raise ConnectionError("Redis unavailable for session storage")
        return client

    async def load(self, conversation_id: str) -> Optional[ConversationSession]:
        redis = await self._client()
        data = await redis.get(self._key(conversation_id))
        if data:
            return ConversationSession.from_json(data)
        return None

    async def store(self, session: ConversationSession) -> None:
        redis = await self._client()
        await redis.setex(self._key(session.conversation_id), self._ttl, session.to_json())

    async def remove(self, conversation_id: str) -> bool:
        redis = await self._client()
        return bool(await redis.delete(self._key(conversation_id)))

    async def evict_expired(self, is_expired: Callable[[ConversationSession], bool]) -> list[str]:
        # Key TTLs already enforce expiry
        return []

    async def count(self) -> int:
        redis = await self._client()
        total = 0
        async for _ in redis.scan_iter(match=f"{SESSION_PREFIX}*"):
            total += 1
        return total


class SessionManager:
    """
    Conversation session store.

    Sessions are created lazily on first access and expire after
    ``timeout`` of inactivity. ``get`` never hands out an expired session:
    it replaces it with a fresh one instead.
    """

    def __init__(
        self,
        backend: Optional[SessionBackend] = None,
        timeout: Optional[timedelta] = None,
        clock: Callable[[], datetime] = datetime.now,
        max_messages: Optional[int] = None,
    ):
        """Initialize session manager.

        Args:
            backend: Storage backend (in-memory by default)
            timeout: Idle timeout (defaults to settings)
            clock: Time source, injectable for tests
            max_messages: History length per session (defaults to settings)
        """
        self._backend = backend or MemorySessionBackend()
        self._timeout = timeout or timedelta(minutes=settings.session_timeout_minutes)
        self._clock = clock
        self._max_messages = max_messages or settings.session_max_messages

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def is_expired(self, session: ConversationSession, now: Optional[datetime] = None) -> bool:
        """Check whether a session has been idle longer than the timeout."""
        now = now or self._clock()
        return now - session.last_activity > self._timeout

    def _new_session(self, conversation_id: str, contact_phone: Optional[str]) -> ConversationSession:
        now = self._clock()
        return ConversationSession(
            conversation_id=conversation_id,
            contact_phone=contact_phone or conversation_id,
            max_messages=self._max_messages,
            created_at=now,
            last_activity=now,
        )

    async def get(
        self,
        conversation_id: str,
        contact_phone: Optional[str] = None,
    ) -> ConversationSession:
        """
        Get the session for a conversation, creating it if needed.

        Args:
            conversation_id: Conversation identifier
            contact_phone: Patient phone (defaults to the identifier)

        Returns:
            Live ConversationSession with refreshed activity time
        """
        now = self._clock()
        session = await self._backend.load(conversation_id)

        if session is not None and self.is_expired(session, now):
            logger.info(f"Session {conversation_id} expired, starting a new one")
            await self._backend.remove(conversation_id)
            session = None

        if session is None:
            session = self._new_session(conversation_id, contact_phone)
            logger.debug(f"Session created: {conversation_id}")
        elif contact_phone and not session.contact_phone:
            session.contact_phone = contact_phone

        session.last_activity = now
        await self._backend.store(session)
        return session

    async def peek(self, conversation_id: str) -> Optional[ConversationSession]:
        """Read a live session without refreshing its activity time."""
        session = await self._backend.load(conversation_id)
        if session is None or self.is_expired(session):
            return None
        return session

    async def save(self, session: ConversationSession) -> None:
        """
        Persist a session after a turn.

        Raises:
            SessionInvariantError: If the session is in an illegal shape
        """
        session.validate()
        session.last_activity = self._clock()
        await self._backend.store(session)
        logger.debug(f"Session saved: {session.conversation_id} ({session.state.value})")

    async def update(self, conversation_id: str, **fields: Any) -> ConversationSession:
        """Merge fields into a session and refresh its activity time."""
        session = await self.get(conversation_id)
        for name, value in fields.items():
            if not hasattr(session, name):
                raise AttributeError(f"ConversationSession has no field {name!r}")
            setattr(session, name, value)
        await self.save(session)
        return session

    async def append_message(self, conversation_id: str, role: str, text: str) -> ConversationSession:
        """Add a message to a session's history."""
        session = await self.get(conversation_id)
        session.add_message(role, text, timestamp=self._clock())
        await self.save(session)
        return session

    async def end(self, conversation_id: str) -> bool:
        """Forcibly evict a session."""
        removed = await self._backend.remove(conversation_id)
        if removed:
            logger.info(f"Session ended: {conversation_id}")
        return removed

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Evict every expired session. Returns the number evicted."""
        now = now or self._clock()
        evicted = await self._backend.evict_expired(lambda s: self.is_expired(s, now))
        if evicted:
            logger.info(f"Swept {len(evicted)} expired session(s)")
        return len(evicted)

    async def count(self) -> int:
        """Number of sessions currently held by the backend."""
        return await self._backend.count()


def build_backend() -> SessionBackend:
    """Create the backend selected by settings.session_backend."""
    if settings.session_backend == "redis":
        return RedisSessionBackend(ttl_seconds=settings.session_timeout_seconds)
    return MemorySessionBackend()


# Singleton
_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get singleton SessionManager."""
    global _manager
    if _manager is None:
        _manager = SessionManager(backend=build_backend())
    return _manager
