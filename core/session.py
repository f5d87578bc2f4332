"""
Session registry: conversation state per session id with idle-timeout eviction.

The registry exclusively owns every Session and the per-session processing
state attached to it. Destroying a session (explicitly or by the idle sweep)
notifies listeners first, then closes the attached processing state so no
silence timer can fire against a session that no longer exists.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.events import SESSION_CREATED, SESSION_DESTROYED, OperatorEvents

logger = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)

DEFAULT_IDLE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    audio_reference: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role}")

    def to_llm(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
        }
        if self.audio_reference:
            out["audio_reference"] = self.audio_reference
        return out


@dataclass
class Session:
    id: str
    provider_config: Any
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    conversation_history: List[Message] = field(default_factory=list)

    def append_message(self, role: str, content: str, audio_reference: Optional[str] = None) -> Message:
        message = Message(role=role, content=content, audio_reference=audio_reference)
        self.conversation_history.append(message)
        return message

    def ordered_messages(self) -> List[Dict[str, str]]:
        """History as [{role, content}] in chronological order."""
        return [m.to_llm() for m in self.conversation_history]

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "last_activity": _iso(self.last_activity),
            "message_count": len(self.conversation_history),
        }


class SessionRegistry:
    """
    Mapping session id -> Session, plus the processing state attached to it.

    Processing state is any object with a `close()` method (TurnController).
    Destroy listeners are called as `listener(session_id, reason)` before the
    session is removed; reason is "timeout" for the idle sweep and
    "destroyed" for explicit destroy.
    """

    def __init__(
        self,
        provider_config: Any,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        events: Optional[OperatorEvents] = None,
    ):
        self.provider_config = provider_config
        self.idle_timeout_seconds = idle_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._events = events
        self._sessions: Dict[str, Session] = {}
        self._states: Dict[str, Any] = {}
        self._destroy_listeners: List[Callable[[str, str], None]] = []
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def get_or_create(self, session_id: Optional[str] = None) -> Session:
        """Return the existing session (touching it) or create an empty one."""
        if session_id:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity = self._clock()
                return session
        else:
            session_id = uuid.uuid4().hex
        now = self._clock()
        session = Session(
            id=session_id,
            provider_config=self.provider_config,
            created_at=now,
            last_activity=now,
        )
        self._sessions[session_id] = session
        logger.info("Session %s created", session_id)
        if self._events:
            self._events.publish(SESSION_CREATED, session_id=session_id)
        return session

    def touch(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.last_activity = self._clock()
        return True

    def attach_state(self, session_id: str, state: Any) -> None:
        if session_id not in self._sessions:
            raise KeyError(session_id)
        previous = self._states.get(session_id)
        if previous is not None and previous is not state:
            previous.close()
        self._states[session_id] = state

    def get_state(self, session_id: str) -> Optional[Any]:
        return self._states.get(session_id)

    def states(self) -> List[Any]:
        return list(self._states.values())

    def add_destroy_listener(self, listener: Callable[[str, str], None]) -> None:
        self._destroy_listeners.append(listener)

    def destroy(self, session_id: str, reason: str = "destroyed") -> bool:
        """Remove a session and its processing state. Returns whether it existed."""
        if session_id not in self._sessions:
            return False
        for listener in list(self._destroy_listeners):
            try:
                listener(session_id, reason)
            except Exception:
                logger.exception("Destroy listener failed for session %s", session_id)
        state = self._states.pop(session_id, None)
        if state is not None:
            state.close()
        del self._sessions[session_id]
        logger.info("Session %s destroyed (%s)", session_id, reason)
        if self._events:
            self._events.publish(SESSION_DESTROYED, session_id=session_id, reason=reason)
        return True

    def expired(self, now: Optional[float] = None) -> List[str]:
        """Ids of sessions idle for longer than the timeout."""
        now = self._clock() if now is None else now
        return [
            sid for sid, session in self._sessions.items()
            if now - session.last_activity > self.idle_timeout_seconds
        ]

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Destroy every expired session; return their ids."""
        destroyed = []
        for session_id in self.expired(now):
            if self.destroy(session_id, reason="timeout"):
                destroyed.append(session_id)
        if destroyed:
            logger.info("Idle sweep destroyed %d session(s)", len(destroyed))
        return destroyed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")

    def start_sweeper(self) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def close(self) -> None:
        """Close all processing state (shutdown). Sessions are kept."""
        for state in self._states.values():
            state.close()
        self._states.clear()
