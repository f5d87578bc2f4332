"""
Silence detector: single-slot debounce timer that decides when a turn has ended.

Every fragment re-arms the timer; re-arming always cancels the previous handle
first, so at most one scheduled flush is live per session and only the most
recently scheduled one can ever fire.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_SILENCE_WINDOW_MS = 2000.0


class SilenceDetector:
    """
    Debounces fragment arrivals into a single "silence elapsed" callback.

    The callback runs on the event loop and receives no arguments. Each
    schedule carries a generation number; a handle that fires after being
    superseded is ignored even if its cancellation raced with the loop.
    """

    def __init__(
        self,
        on_silence: Callable[[], None],
        silence_window_ms: float = DEFAULT_SILENCE_WINDOW_MS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Args:
            on_silence: Called once when `silence_window_ms` passes without a reset.
            silence_window_ms: Debounce window measured from the latest reset.
            loop: Event loop providing call_later (defaults to the running loop).
        """
        self.silence_window_ms = max(0.0, silence_window_ms)
        self._on_silence = on_silence
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._closed = False

    @property
    def pending(self) -> bool:
        """True while a scheduled flush is live."""
        return self._handle is not None

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self) -> None:
        """Cancel any pending flush and schedule a new one after the silence window."""
        if self._closed:
            return
        self.cancel()
        self._generation += 1
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.silence_window_ms / 1000.0, self._fire, self._generation)

    def cancel(self) -> bool:
        """Cancel the pending flush. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def close(self) -> None:
        """Cancel and refuse further scheduling (session torn down)."""
        self.cancel()
        self._closed = True

    def _fire(self, generation: int) -> None:
        if self._closed or self._handle is None or generation != self._generation:
            logger.debug("Stale silence timer (generation %d, current %d) ignored", generation, self._generation)
            return
        self._handle = None
        self._on_silence()
