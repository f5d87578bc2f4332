"""
WebSocket transport for /ws/voice.

- JSON text frames carry commands: join-session, start-listening,
  stop-listening, audio-chunk (base64 "data", optional "is_final"), end-audio.
- Binary frames are audio fragments for the connection's current session.
- Protocol errors (unknown session, bad payload) go back to the sending
  connection only; the connection stays open.
- Server events fan out to every connection joined to the session.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from core.errors import ProtocolError
from core.events import (
    AUDIO_CHUNK,
    END_AUDIO,
    ERROR,
    JOIN_SESSION,
    SESSION_JOINED,
    START_LISTENING,
    STOP_LISTENING,
    build_event,
)

logger = logging.getLogger(__name__)


class ConnectionHub:
    """
    Session id -> connected websockets. Any object with an async
    `send_json(dict)` works as a connection.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[Any]] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Scheduled notifications not yet delivered."""
        return len(self._tasks)

    def join(self, session_id: str, ws: Any) -> None:
        self._rooms.setdefault(session_id, set()).add(ws)

    def leave(self, session_id: str, ws: Any) -> None:
        room = self._rooms.get(session_id)
        if room is None:
            return
        room.discard(ws)
        if not room:
            del self._rooms[session_id]

    def leave_all(self, ws: Any) -> List[str]:
        """Remove `ws` from every room; return sessions left with no connections."""
        orphaned = []
        for session_id in [sid for sid, room in self._rooms.items() if ws in room]:
            self.leave(session_id, ws)
            if session_id not in self._rooms:
                orphaned.append(session_id)
        return orphaned

    def clients(self, session_id: str) -> int:
        return len(self._rooms.get(session_id, ()))

    @staticmethod
    async def send(ws: Any, event: Dict[str, Any]) -> bool:
        try:
            await ws.send_json(event)
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropping event %s for closed connection: %s", event.get("type"), e)
            return False

    async def notify(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Deliver one event to every connection joined to `session_id`."""
        event = build_event(event_type, session_id, **payload)
        for ws in list(self._rooms.get(session_id, ())):
            if not await self.send(ws, event):
                self.leave(session_id, ws)

    def close_room(self, session_id: str) -> None:
        self._rooms.pop(session_id, None)

    async def _notify_and_close(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self.notify(session_id, event_type, payload)
        finally:
            self.close_room(session_id)

    def notify_nowait(
        self, session_id: str, event_type: str, payload: Dict[str, Any], close_room: bool = False
    ) -> Optional[asyncio.Task]:
        """Schedule `notify` from synchronous code running on the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; %s for session %s not delivered", event_type, session_id)
            if close_room:
                self.close_room(session_id)
            return None
        if close_room:
            task = loop.create_task(self._notify_and_close(session_id, event_type, payload))
        else:
            task = loop.create_task(self.notify(session_id, event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(self._notified)
        return task

    def _notified(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Scheduled notification failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for every scheduled notification to be delivered."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _decode_audio(data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if not isinstance(data, str):
        raise ProtocolError("audio-chunk data must be base64 text")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ProtocolError("audio-chunk data is not valid base64")


def build_ws_voice_handler(relay: Any, get_metrics: Optional[Any] = None) -> Callable:
    """
    Build the async WebSocket handler for /ws/voice.

    Args:
        relay: VoiceRelay owning sessions, turn state and the connection hub.
        get_metrics: Optional module with record_connection_open/close.

    Returns:
        Async function (websocket: WebSocket) -> None for use with FastAPI.
    """
    metrics = get_metrics
    hub = relay.hub

    async def handle_ws_voice(websocket: WebSocket) -> None:
        await websocket.accept()
        if metrics and hasattr(metrics, "record_connection_open"):
            metrics.record_connection_open()
        current: Optional[str] = None

        async def send_error(message: str, session_id: Optional[str] = None) -> None:
            await hub.send(websocket, build_event(ERROR, session_id, message=message))

        def resolve_session(msg: Dict[str, Any]) -> str:
            session_id = msg.get("session_id") or current
            if not session_id:
                raise ProtocolError("No session: send join-session first")
            return session_id

        async def dispatch(msg: Dict[str, Any]) -> None:
            nonlocal current
            kind = msg.get("type")
            if kind == JOIN_SESSION:
                session = relay.join(msg.get("session_id"))
                hub.join(session.id, websocket)
                current = session.id
                await hub.send(websocket, build_event(SESSION_JOINED, session.id))
            elif kind == START_LISTENING:
                await relay.start_listening(resolve_session(msg))
            elif kind == STOP_LISTENING:
                await relay.stop_listening(resolve_session(msg))
            elif kind == END_AUDIO:
                await relay.end_audio(resolve_session(msg))
            elif kind == AUDIO_CHUNK:
                audio = _decode_audio(msg.get("data"))
                relay.accept_fragment(resolve_session(msg), audio, bool(msg.get("is_final", False)))
            else:
                raise ProtocolError(f"Unknown command: {kind}")

        try:
            while True:
                data = await websocket.receive()
                if data.get("type") == "websocket.disconnect":
                    break
                if data.get("type") != "websocket.receive":
                    continue
                if data.get("bytes") is not None:
                    if current is None:
                        await send_error("No session: send join-session first")
                        continue
                    try:
                        relay.accept_fragment(current, data["bytes"], False)
                    except ProtocolError as e:
                        await send_error(str(e), current)
                    continue
                text = data.get("text")
                if text is None:
                    continue
                try:
                    msg = json.loads(text)
                except ValueError:
                    await send_error("Invalid JSON command")
                    continue
                if not isinstance(msg, dict):
                    await send_error("Command must be a JSON object")
                    continue
                try:
                    await dispatch(msg)
                except ProtocolError as e:
                    await send_error(str(e), msg.get("session_id") or current)
                except Exception as e:
                    logger.exception("Failed to handle %s", msg.get("type"))
                    await send_error(f"Failed to handle {msg.get('type')}: {e}", msg.get("session_id") or current)
        except WebSocketDisconnect:
            pass
        finally:
            if metrics and hasattr(metrics, "record_connection_close"):
                metrics.record_connection_close()
            relay.disconnect(websocket)

    return handle_ws_voice
