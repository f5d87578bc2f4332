"""
VoiceRelay: wires the session registry, per-session turn controllers, the
turn guard, the conversation pipeline and the connection hub together.

This is the surface the transport and the admin endpoints talk to.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from core.errors import SessionNotFoundError
from core.events import SESSION_TIMEOUT, OperatorEvents
from core.pipeline import DEFAULT_MIN_CONFIDENCE, ConversationPipeline
from core.session import Session, SessionRegistry
from streaming.audio_buffer import DEFAULT_MAX_BYTES
from streaming.turn_controller import DEFAULT_MIN_TURN_DURATION_MS, TurnController
from streaming.turn_detector import DEFAULT_SILENCE_WINDOW_MS
from streaming.turn_guard import TurnGuard
from streaming.websocket_server import ConnectionHub

logger = logging.getLogger(__name__)


class VoiceRelay:
    def __init__(
        self,
        registry: SessionRegistry,
        transcriber: Any,
        llm: Any,
        synthesizer: Any,
        hub: Optional[ConnectionHub] = None,
        events: Optional[OperatorEvents] = None,
        silence_window_ms: float = DEFAULT_SILENCE_WINDOW_MS,
        min_turn_duration_ms: float = DEFAULT_MIN_TURN_DURATION_MS,
        max_buffer_bytes: int = DEFAULT_MAX_BYTES,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.registry = registry
        self.hub = hub or ConnectionHub()
        self.events = events or OperatorEvents()
        self.silence_window_ms = silence_window_ms
        self.min_turn_duration_ms = min_turn_duration_ms
        self.max_buffer_bytes = max_buffer_bytes
        self._metrics = metrics
        self._clock = clock
        self._loop = loop
        self.pipeline = ConversationPipeline(
            transcriber,
            llm,
            synthesizer,
            registry,
            notify=self.hub.notify,
            events=self.events,
            min_confidence=min_confidence,
            metrics=metrics,
        )
        self.guard = TurnGuard(self.pipeline.run, on_failure=self.pipeline.report_failure, metrics=metrics)
        registry.add_destroy_listener(self._on_session_destroyed)

    # ----- Lifecycle -----

    async def start(self) -> None:
        self.registry.start_sweeper()

    async def stop(self) -> None:
        await self.registry.stop_sweeper()
        self.registry.close()
        await self.guard.drain()
        await self.hub.drain()
        for backend in (self.pipeline.transcriber, self.pipeline.llm, self.pipeline.synthesizer):
            aclose = getattr(backend, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception:
                logger.exception("Failed to close %s", type(backend).__name__)

    def _on_session_destroyed(self, session_id: str, reason: str) -> None:
        # A run still in flight finishes in the background and its result is discarded
        if self.guard.release(session_id):
            logger.info("Session %s destroyed mid-pipeline; busy slot released", session_id)
        self.hub.notify_nowait(session_id, SESSION_TIMEOUT, {"reason": reason}, close_room=True)

    # ----- Sessions -----

    def join(self, session_id: Optional[str] = None) -> Session:
        """Look up or create the session and make sure it has turn state."""
        session = self.registry.get_or_create(session_id)
        if self.registry.get_state(session.id) is None:
            self.registry.attach_state(session.id, self._new_controller(session.id))
        return session

    def _new_controller(self, session_id: str) -> TurnController:
        return TurnController(
            session_id,
            self.guard,
            notify=self.hub.notify,
            on_activity=lambda: self.registry.touch(session_id),
            silence_window_ms=self.silence_window_ms,
            min_turn_duration_ms=self.min_turn_duration_ms,
            max_buffer_bytes=self.max_buffer_bytes,
            clock=self._clock,
            loop=self._loop,
            metrics=self._metrics,
        )

    def controller(self, session_id: str) -> TurnController:
        state = self.registry.get_state(session_id)
        if session_id not in self.registry or state is None:
            raise SessionNotFoundError(session_id)
        return state

    def destroy(self, session_id: str) -> bool:
        return self.registry.destroy(session_id)

    def disconnect(self, ws: Any) -> None:
        """Connection closed: suspend sessions nobody is connected to anymore."""
        for session_id in self.hub.leave_all(ws):
            state = self.registry.get_state(session_id)
            if state is not None:
                state.suspend()
                logger.info("Last client left session %s; listening suspended", session_id)

    # ----- Turn taking -----

    async def start_listening(self, session_id: str) -> bool:
        self.registry.touch(session_id)
        return await self.controller(session_id).start_listening()

    async def stop_listening(self, session_id: str) -> Optional[asyncio.Task]:
        self.registry.touch(session_id)
        return await self.controller(session_id).stop_listening()

    async def end_audio(self, session_id: str) -> Optional[asyncio.Task]:
        self.registry.touch(session_id)
        return await self.controller(session_id).end_audio()

    def accept_fragment(self, session_id: str, fragment: bytes, is_final: bool = False) -> Optional[asyncio.Task]:
        return self.controller(session_id).accept_fragment(fragment, is_final=is_final)

    def force_process(self, session_id: str) -> Optional[asyncio.Task]:
        """Flush whatever the session has buffered right now."""
        return self.controller(session_id).force_flush()

    def is_listening(self, session_id: str) -> bool:
        state = self.registry.get_state(session_id)
        return bool(state and state.listening)

    def is_processing(self, session_id: str) -> bool:
        return self.guard.is_busy(session_id)

    # ----- Admin -----

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.summary() for s in self.registry.sessions()]

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "sessions": len(self.registry),
            "active_processing": self.guard.in_flight,
        }
