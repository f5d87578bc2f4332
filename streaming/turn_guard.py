"""
Turn processing guard: single-flight execution of the conversation pipeline per session.

`submit` checks and sets the session's busy slot in one synchronous step on the
event loop, so two triggers can never both start a pipeline run for the same
session. The slot holds the task running the pipeline; it is cleared by the
task's done callback whether the run succeeds, fails or is cancelled (even
before it started). A stale run whose slot was released never clears the slot
of a newer run.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)


class TurnGuard:
    """
    Per-session busy slots plus the tasks running the pipeline.

    Args:
        process: async (session_id, audio) -> result; the conversation pipeline.
        on_failure: optional async (session_id, exc) -> None, called when process raises.
        metrics: optional module with record_turn_accepted and record_duplicate_trigger.
    """

    def __init__(
        self,
        process: Callable[[str, bytes], Awaitable[Any]],
        on_failure: Optional[Callable[[str, BaseException], Awaitable[None]]] = None,
        metrics: Optional[Any] = None,
    ):
        self._process = process
        self._on_failure = on_failure
        self._metrics = metrics
        self._running: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._running

    def task(self, session_id: str) -> Optional[asyncio.Task]:
        """The task currently holding the session's busy slot, if any."""
        return self._running.get(session_id)

    @property
    def in_flight(self) -> int:
        """Number of sessions currently mid-pipeline."""
        return len(self._running)

    def submit(self, session_id: str, audio: bytes) -> Optional[asyncio.Task]:
        """
        Start the pipeline for `audio` unless the session is busy or audio is empty.

        Returns the task running the pipeline, or None when the submission was dropped.
        """
        if not audio:
            return None
        if session_id in self._running:
            logger.info("Session %s busy; dropping duplicate turn (%d bytes)", session_id, len(audio))
            if self._metrics and hasattr(self._metrics, "record_duplicate_trigger"):
                self._metrics.record_duplicate_trigger()
            return None
        task = asyncio.get_running_loop().create_task(self._run(session_id, audio))
        self._running[session_id] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finish(session_id, t))
        if self._metrics and hasattr(self._metrics, "record_turn_accepted"):
            self._metrics.record_turn_accepted()
        return task

    def release(self, session_id: str) -> bool:
        """
        Free the session's busy slot without cancelling its run (session destroyed).
        The stale run finishes in the background; its result is discarded by the pipeline.
        """
        return self._running.pop(session_id, None) is not None

    def _finish(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._running.get(session_id) is task:
            del self._running[session_id]

    async def _run(self, session_id: str, audio: bytes) -> Any:
        try:
            return await self._process(session_id, audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Turn processing failed for session %s: %s", session_id, e)
            if self._on_failure:
                try:
                    await self._on_failure(session_id, e)
                except Exception:
                    logger.exception("Failure handler raised for session %s", session_id)
            return None

    async def drain(self) -> None:
        """Wait for every pipeline run to finish, released ones included."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
