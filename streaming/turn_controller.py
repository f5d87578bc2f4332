"""
Per-session processing state: listening flag, live turn buffer and silence detector.

Fragments accumulate into the live TurnBuffer and re-arm the SilenceDetector.
A turn ends when the silence window elapses (subject to the minimum duration)
or on an explicit end signal (final fragment, stop-listening, end-audio). The
flushed turn is handed to the TurnGuard and the live buffer is replaced by a
fresh one, so fragments arriving while the pipeline is busy start a new turn.

A turn that ends while the previous one is still in the pipeline is not
flushed: its audio stays buffered and the trigger is deferred until the
running task completes, then flushed.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from core.errors import ProtocolError
from core.events import LISTENING_STARTED, LISTENING_STOPPED, ClientNotifier
from streaming.audio_buffer import DEFAULT_MAX_BYTES, TurnBuffer
from streaming.turn_detector import DEFAULT_SILENCE_WINDOW_MS, SilenceDetector
from streaming.turn_guard import TurnGuard

logger = logging.getLogger(__name__)

DEFAULT_MIN_TURN_DURATION_MS = 500.0


class TurnController:
    """
    Turn-taking state machine for one session.

    Args:
        session_id: Session this state belongs to.
        guard: Shared TurnGuard; flushed turns are submitted here.
        notify: async (session_id, event_type, payload) delivering client events.
        on_activity: Called on every accepted fragment (registry touch).
        silence_window_ms: Debounce window before a silence flush.
        min_turn_duration_ms: Silence flushes of shorter turns are discarded.
        max_buffer_bytes: Ceiling for the live TurnBuffer.
        clock: Monotonic clock for buffer timestamps.
        loop: Event loop for the silence timer (defaults to the running loop).
        metrics: Optional module with record_bytes_evicted / record_short_turn_discarded.
    """

    def __init__(
        self,
        session_id: str,
        guard: TurnGuard,
        notify: Optional[ClientNotifier] = None,
        on_activity: Optional[Callable[[], Any]] = None,
        silence_window_ms: float = DEFAULT_SILENCE_WINDOW_MS,
        min_turn_duration_ms: float = DEFAULT_MIN_TURN_DURATION_MS,
        max_buffer_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], float] = time.monotonic,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        metrics: Optional[Any] = None,
    ):
        self.session_id = session_id
        self.min_turn_duration_ms = min_turn_duration_ms
        self.max_buffer_bytes = max_buffer_bytes
        self._guard = guard
        self._notify = notify
        self._on_activity = on_activity
        self._clock = clock
        self._metrics = metrics
        self._detector = SilenceDetector(self._on_silence, silence_window_ms=silence_window_ms, loop=loop)
        self.listening = False
        self.buffer: Optional[TurnBuffer] = None
        self.closed = False
        self._deferred: Optional[str] = None  # trigger waiting for the running turn
        self._resume_armed = False

    @property
    def busy(self) -> bool:
        return self._guard.is_busy(self.session_id)

    @property
    def timer_pending(self) -> bool:
        return self._detector.pending

    @property
    def deferred(self) -> Optional[str]:
        """Trigger of a turn that ended while the session was busy, if any."""
        return self._deferred

    def _new_buffer(self) -> TurnBuffer:
        return TurnBuffer(max_bytes=self.max_buffer_bytes, clock=self._clock)

    async def _send(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self._notify:
            await self._notify(self.session_id, event_type, payload or {})

    async def start_listening(self) -> bool:
        """Begin accepting fragments. Returns False if already listening."""
        if self.closed:
            raise ProtocolError(f"Session {self.session_id} is closed")
        if self.listening:
            return False
        self.listening = True
        if self.buffer is None:
            self.buffer = self._new_buffer()
        logger.info("Started listening for session %s", self.session_id)
        await self._send(LISTENING_STARTED)
        return True

    async def stop_listening(self) -> Optional[asyncio.Task]:
        """Stop accepting fragments and flush whatever is buffered as a turn."""
        self.listening = False
        self._detector.cancel()
        task = self._flush("stop")
        if self._deferred is None:
            self.buffer = None
        logger.info("Stopped listening for session %s", self.session_id)
        await self._send(LISTENING_STOPPED)
        return task

    async def end_audio(self) -> Optional[asyncio.Task]:
        """Client signalled end of audio: same as stop-listening."""
        return await self.stop_listening()

    def accept_fragment(self, fragment: bytes, is_final: bool = False) -> Optional[asyncio.Task]:
        """
        Buffer one fragment. Ignored unless listening.

        A final fragment flushes immediately; otherwise the silence timer is re-armed.
        Returns the pipeline task when this call handed off a turn.
        """
        if self.closed or not self.listening:
            return None
        if self.buffer is None:
            self.buffer = self._new_buffer()
        evicted = self.buffer.append(fragment)
        if evicted:
            logger.warning(
                "Audio buffer limit exceeded for session %s; evicted %d oldest bytes",
                self.session_id, evicted,
            )
            if self._metrics and hasattr(self._metrics, "record_bytes_evicted"):
                self._metrics.record_bytes_evicted(evicted)
        if self._on_activity:
            self._on_activity()
        if is_final:
            self._detector.cancel()
            return self._flush("final")
        self._detector.reset()
        return None

    def force_flush(self) -> Optional[asyncio.Task]:
        """Flush now regardless of listening state or duration."""
        self._detector.cancel()
        return self._flush("forced")

    def _on_silence(self) -> None:
        if self.closed or not self.listening or self.buffer is None or self.buffer.is_empty():
            return
        duration_ms = self.buffer.speech_duration_ms()
        if duration_ms < self.min_turn_duration_ms:
            logger.debug(
                "Turn too short for session %s (%.0f ms < %.0f ms); not processed",
                self.session_id, duration_ms, self.min_turn_duration_ms,
            )
            if self._metrics and hasattr(self._metrics, "record_short_turn_discarded"):
                self._metrics.record_short_turn_discarded()
            return
        self._flush("silence")

    def _flush(self, trigger: str) -> Optional[asyncio.Task]:
        if self.closed or self.buffer is None or self.buffer.is_empty():
            return None
        if self._guard.is_busy(self.session_id):
            self._defer(trigger)
            return None
        turn = self.buffer.flush()
        if turn is None:
            return None
        self.buffer = self._new_buffer()
        logger.debug(
            "Flushing turn for session %s on %s: %d bytes, %d fragments, %.0f ms",
            self.session_id, trigger, turn.size, turn.fragment_count, turn.duration_ms,
        )
        return self._guard.submit(self.session_id, turn.audio)

    def _defer(self, trigger: str) -> None:
        # Explicit end signals win over a deferred silence flush
        if self._deferred is None or trigger != "silence":
            self._deferred = trigger
        logger.info(
            "Session %s busy; holding %d bytes until the running turn completes (%s)",
            self.session_id, self.buffer.total_bytes, trigger,
        )
        running = self._guard.task(self.session_id)
        if running is not None and not self._resume_armed:
            self._resume_armed = True
            running.add_done_callback(self._resume)

    def _resume(self, _task: asyncio.Task) -> None:
        self._resume_armed = False
        trigger, self._deferred = self._deferred, None
        if trigger is None or self.closed:
            return
        # Speech continued after the deferred silence; the live timer decides
        if trigger == "silence" and self._detector.pending:
            return
        self._flush(trigger)
        if not self.listening and self._deferred is None:
            self.buffer = None

    def suspend(self) -> None:
        """Last client went away: stop listening and drop buffered audio unprocessed."""
        self.listening = False
        self._deferred = None
        self._detector.cancel()
        self.buffer = None

    def close(self) -> None:
        """Tear down: cancel the silence timer and drop buffered audio."""
        self.closed = True
        self.listening = False
        self._deferred = None
        self._detector.close()
        self.buffer = None
