"""
Per-session turn buffer for inbound microphone audio.

Accumulates fragments of any size until the turn is flushed. Total size is
bounded: when a new fragment would push the buffer over its ceiling, the oldest
fragments are evicted first, but the newest fragment always survives. A flush
detaches the content as an immutable snapshot, so later eviction in the live
buffer can never touch a turn already handed off for processing.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

# 16 kHz mono, 16-bit = 32000 bytes/sec
SAMPLE_RATE = 16000
BYTES_PER_SAMPLE = 2
BYTES_PER_SECOND = SAMPLE_RATE * BYTES_PER_SAMPLE

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


def bytes_to_duration_ms(num_bytes: int) -> float:
    """Convert raw audio byte count to duration in milliseconds."""
    if num_bytes <= 0:
        return 0.0
    return (num_bytes / BYTES_PER_SECOND) * 1000.0


def duration_ms_to_bytes(ms: float) -> int:
    """Convert duration in ms to byte count for 16 kHz 16-bit mono."""
    return int((ms / 1000.0) * BYTES_PER_SECOND)


@dataclass(frozen=True)
class FlushedTurn:
    """Detached content of one turn, ready for transcription."""
    audio: bytes
    duration_ms: float
    fragment_count: int

    @property
    def size(self) -> int:
        return len(self.audio)


class TurnBuffer:
    """
    One generation of buffered audio for a session.

    - `append` accepts fragments of any size and enforces `max_bytes` by FIFO
      eviction (never evicting the newest fragment).
    - `duration_ms` is wall-clock time since the first fragment of this turn.
    - `flush` returns a FlushedTurn and empties the buffer; flushing an empty
      buffer returns None.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            max_bytes: Ceiling on buffered bytes (default 10 MiB).
            clock: Monotonic clock in seconds (injectable for tests).
        """
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self._clock = clock
        self._fragments: Deque[bytes] = deque()
        self._total_bytes = 0
        self._evicted_bytes = 0
        self.turn_started_at: Optional[float] = None
        self.last_fragment_at: Optional[float] = None

    def append(self, fragment: bytes) -> int:
        """
        Append a raw audio fragment; return the number of bytes evicted to make room.
        Empty fragments are ignored.
        """
        if not fragment:
            return 0
        now = self._clock()
        if self.turn_started_at is None:
            self.turn_started_at = now
        self.last_fragment_at = now
        self._fragments.append(bytes(fragment))
        self._total_bytes += len(fragment)

        evicted = 0
        while self._total_bytes > self.max_bytes and len(self._fragments) > 1:
            dropped = self._fragments.popleft()
            self._total_bytes -= len(dropped)
            evicted += len(dropped)
        # A single fragment larger than the ceiling keeps only its newest bytes
        if self._total_bytes > self.max_bytes:
            newest = self._fragments.pop()
            trimmed = newest[-self.max_bytes:]
            evicted += len(newest) - len(trimmed)
            self._fragments.append(trimmed)
            self._total_bytes = len(trimmed)
        self._evicted_bytes += evicted
        return evicted

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    @property
    def evicted_bytes(self) -> int:
        """Total bytes discarded by eviction over this buffer's lifetime."""
        return self._evicted_bytes

    def is_empty(self) -> bool:
        return not self._fragments

    def duration_ms(self) -> float:
        """Milliseconds since the first fragment of the current turn (0 when empty)."""
        if self.turn_started_at is None:
            return 0.0
        return max(0.0, (self._clock() - self.turn_started_at) * 1000.0)

    def audio_duration_ms(self) -> float:
        """Duration represented by the buffered bytes, assuming 16 kHz 16-bit mono PCM."""
        return bytes_to_duration_ms(self._total_bytes)

    def speech_duration_ms(self) -> float:
        """
        Accumulated speech: span from first to latest fragment, or the PCM length
        of the buffered bytes when that is longer (one large fragment has no span).
        """
        if self.turn_started_at is None or self.last_fragment_at is None:
            return 0.0
        span_ms = (self.last_fragment_at - self.turn_started_at) * 1000.0
        return max(span_ms, self.audio_duration_ms())

    def flush(self) -> Optional[FlushedTurn]:
        """Detach and return buffered audio, resetting the buffer. None if empty."""
        if not self._fragments:
            return None
        turn = FlushedTurn(
            audio=b"".join(self._fragments),
            duration_ms=self.duration_ms(),
            fragment_count=len(self._fragments),
        )
        self._fragments.clear()
        self._total_bytes = 0
        self.turn_started_at = None
        self.last_fragment_at = None
        return turn
