"""
Event names and payloads exchanged between the relay core, its clients and operators.

Client events (server -> client, JSON objects with a "type" key):

    session-joined      {"session_id"}
    listening-started   {"session_id"}
    listening-stopped   {"session_id"}
    transcription       {"session_id", "text", "confidence", "is_final"}
    llm-response        {"session_id", "text", "usage"}
    tts-audio           {"session_id", "audio" (base64), "duration"}
    error               {"session_id", "message"}
    session-timeout     {"session_id", "reason"}

Client commands (client -> server): join-session, start-listening,
stop-listening, audio-chunk, end-audio. Binary websocket frames are audio
fragments for the connection's current session.

Operator events (published in-process to subscribers of OperatorEvents):

    session-created         (session_id)
    session-destroyed       (session_id, reason)
    transcription-complete  (session_id, text)
    llm-response-complete   (session_id, text)
    tts-complete            (session_id, audio_bytes)
    error                   (session_id, stage, message)
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# ----- Client commands -----
JOIN_SESSION = "join-session"
START_LISTENING = "start-listening"
STOP_LISTENING = "stop-listening"
AUDIO_CHUNK = "audio-chunk"
END_AUDIO = "end-audio"

CLIENT_COMMANDS = (JOIN_SESSION, START_LISTENING, STOP_LISTENING, AUDIO_CHUNK, END_AUDIO)

# ----- Server -> client -----
SESSION_JOINED = "session-joined"
LISTENING_STARTED = "listening-started"
LISTENING_STOPPED = "listening-stopped"
TRANSCRIPTION = "transcription"
LLM_RESPONSE = "llm-response"
TTS_AUDIO = "tts-audio"
ERROR = "error"
SESSION_TIMEOUT = "session-timeout"

# ----- Operator stream -----
SESSION_CREATED = "session-created"
SESSION_DESTROYED = "session-destroyed"
TRANSCRIPTION_COMPLETE = "transcription-complete"
LLM_RESPONSE_COMPLETE = "llm-response-complete"
TTS_COMPLETE = "tts-complete"
OPERATOR_ERROR = "error"

# Async callable delivering one event to every client of a session:
#   await notify(session_id, event_type, payload)
ClientNotifier = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


def build_event(event_type: str, session_id: Optional[str], **payload: Any) -> Dict[str, Any]:
    """Client-facing JSON object for one event."""
    event = {"type": event_type, "session_id": session_id}
    event.update(payload)
    return event


class OperatorEvents:
    """
    In-process fan-out of lifecycle and failure events for the owning process.

    Subscribers are plain callables `(event_name, data_dict) -> None`. A failing
    subscriber is logged and never affects the publisher or other subscribers.
    """

    def __init__(self):
        self._subscribers: List[Callable[[str, Dict[str, Any]], None]] = []

    def subscribe(self, callback: Callable[[str, Dict[str, Any]], None]) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: str, **data: Any) -> None:
        if event == OPERATOR_ERROR:
            logger.warning("%s %s", event, data)
        else:
            logger.debug("%s %s", event, data)
        for callback in list(self._subscribers):
            try:
                callback(event, data)
            except Exception:
                logger.exception("Operator event subscriber failed on %s", event)
