"""
Real-time turn-taking layer.

- audio_buffer: Per-session turn buffer with FIFO eviction at a size ceiling.
- turn_detector: Single-slot silence debounce timer.
- turn_guard: Single-flight pipeline execution per session.
- turn_controller: Per-session listening state tying the three together.
- relay / websocket_server: VoiceRelay and the /ws/voice handler (import separately to avoid pulling FastAPI).
"""

from streaming.audio_buffer import FlushedTurn, TurnBuffer, bytes_to_duration_ms, duration_ms_to_bytes
from streaming.turn_controller import TurnController
from streaming.turn_detector import SilenceDetector
from streaming.turn_guard import TurnGuard

__all__ = [
    "FlushedTurn",
    "SilenceDetector",
    "TurnBuffer",
    "TurnController",
    "TurnGuard",
    "bytes_to_duration_ms",
    "duration_ms_to_bytes",
]
