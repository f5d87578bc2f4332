"""
Relay observability metrics.

Thread-safe counters and latency samples for the voice relay.
Exposed via GET /metrics/relay (JSON snapshot).
Used by the websocket handler, turn controller, turn guard and pipeline.
"""

import threading
from collections import deque
from typing import Any, Dict

# ----- Shared state (module-level for singleton behavior) -----
_lock = threading.Lock()
_active_connections = 0
_latency_samples: deque = deque(maxlen=1000)  # last N pipeline total_ms values for avg/p95
_turns_accepted = 0
_turns_completed = 0
_turns_ignored = 0  # empty or low-confidence transcripts
_duplicate_triggers = 0
_short_turns_discarded = 0
_bytes_evicted = 0
_collaborator_failures: Dict[str, int] = {}


def record_connection_open() -> None:
    """Call when a WebSocket connection is accepted."""
    with _lock:
        global _active_connections
        _active_connections += 1


def record_connection_close() -> None:
    """Call when a WebSocket connection closes."""
    with _lock:
        global _active_connections
        _active_connections = max(0, _active_connections - 1)


def record_turn_accepted() -> None:
    """Call when the turn guard hands a flushed turn to the pipeline."""
    with _lock:
        global _turns_accepted
        _turns_accepted += 1


def record_turn_completed(total_ms: float) -> None:
    """Record one completed transcribe->complete->synthesize run and its latency."""
    with _lock:
        global _turns_completed
        _turns_completed += 1
        _latency_samples.append(total_ms)


def record_turn_ignored() -> None:
    """Transcript was empty or below the confidence threshold."""
    with _lock:
        global _turns_ignored
        _turns_ignored += 1


def record_duplicate_trigger() -> None:
    """A flush was submitted while the session was already busy."""
    with _lock:
        global _duplicate_triggers
        _duplicate_triggers += 1


def record_short_turn_discarded() -> None:
    """Silence fired before the minimum turn duration was reached."""
    with _lock:
        global _short_turns_discarded
        _short_turns_discarded += 1


def record_bytes_evicted(num_bytes: int) -> None:
    """Bytes dropped by FIFO eviction at the buffer ceiling."""
    if num_bytes <= 0:
        return
    with _lock:
        global _bytes_evicted
        _bytes_evicted += num_bytes


def record_collaborator_failure(stage: str) -> None:
    """Call when an STT/LLM/TTS call fails; stage is transcribing/completing/synthesizing."""
    with _lock:
        _collaborator_failures[stage] = _collaborator_failures.get(stage, 0) + 1


def reset() -> None:
    """Zero every counter (tests and process restarts)."""
    global _active_connections, _turns_accepted, _turns_completed, _turns_ignored
    global _duplicate_triggers, _short_turns_discarded, _bytes_evicted
    with _lock:
        _active_connections = 0
        _turns_accepted = 0
        _turns_completed = 0
        _turns_ignored = 0
        _duplicate_triggers = 0
        _short_turns_discarded = 0
        _bytes_evicted = 0
        _collaborator_failures.clear()
        _latency_samples.clear()


def get_snapshot() -> Dict[str, Any]:
    """
    Return a JSON-serializable snapshot of relay metrics.
    Used by GET /metrics/relay.
    """
    with _lock:
        samples = list(_latency_samples)
        snapshot = {
            "active_connections": _active_connections,
            "turns_accepted": _turns_accepted,
            "turns_completed": _turns_completed,
            "turns_ignored": _turns_ignored,
            "duplicate_triggers": _duplicate_triggers,
            "short_turns_discarded": _short_turns_discarded,
            "bytes_evicted": _bytes_evicted,
            "collaborator_failures": dict(_collaborator_failures),
        }
    n = len(samples)
    if n == 0:
        avg_latency_ms = None
        p95_latency_ms = None
    else:
        avg_latency_ms = round(sum(samples) / n, 2)
        sorted_s = sorted(samples)
        idx = max(0, int(0.95 * n) - 1)
        p95_latency_ms = round(sorted_s[idx], 2)
    snapshot["avg_latency_ms"] = avg_latency_ms
    snapshot["p95_latency_ms"] = p95_latency_ms
    snapshot["latency_sample_count"] = n
    return snapshot
