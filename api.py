"""
HTTP and WebSocket surface for a VoiceRelay.

    GET    /health                    session count and sessions mid-pipeline
    GET    /sessions                  id, timestamps, message count per session
    GET    /sessions/{id}             one session with its conversation history
    DELETE /sessions/{id}             force-destroy a session
    POST   /sessions/{id}/process     flush buffered audio now
    GET    /metrics/relay             JSON metrics snapshot
    WS     /ws/voice                  voice conversation
"""
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from core.errors import SessionNotFoundError
from streaming.relay import VoiceRelay
from streaming.websocket_server import build_ws_voice_handler


def create_app(relay: VoiceRelay, cors_origins: Optional[List[str]] = None, metrics: Optional[Any] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        try:
            yield
        finally:
            await relay.stop()

    app = FastAPI(title="Voice Relay API", lifespan=lifespan)
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        return relay.health()

    @app.get("/sessions")
    def list_sessions():
        return relay.list_sessions()

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str):
        session = relay.registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        out = session.summary()
        out["listening"] = relay.is_listening(session_id)
        out["processing"] = relay.is_processing(session_id)
        out["messages"] = [m.to_dict() for m in session.conversation_history]
        return out

    @app.delete("/sessions/{session_id}")
    async def destroy_session(session_id: str):
        return {"destroyed": relay.destroy(session_id)}

    @app.post("/sessions/{session_id}/process")
    async def force_process(session_id: str):
        try:
            task = relay.force_process(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"submitted": task is not None}

    if metrics is not None and hasattr(metrics, "get_snapshot"):
        @app.get("/metrics/relay", include_in_schema=False)
        def metrics_relay():
            """JSON snapshot: connections, turns, dropped triggers, evictions, failures, latency."""
            return metrics.get_snapshot()

    app.websocket("/ws/voice")(build_ws_voice_handler(relay, get_metrics=metrics))
    return app
