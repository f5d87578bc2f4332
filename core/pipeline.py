"""
Conversation pipeline: transcribe -> complete -> synthesize for one flushed turn.

Stages run strictly in sequence:

    idle -> transcribing -> (empty / low confidence: idle)
         -> completing -> synthesizing -> idle

A collaborator failure aborts the remaining stages and raises CollaboratorError;
messages already appended to the history stay there. If the session is
destroyed while a collaborator call is in flight, the result is discarded when
it arrives.
"""
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

from core.asr import Transcription
from core.confidence import describe
from core.errors import CollaboratorError
from core.events import (
    ERROR,
    LLM_RESPONSE,
    LLM_RESPONSE_COMPLETE,
    OPERATOR_ERROR,
    TRANSCRIPTION,
    TRANSCRIPTION_COMPLETE,
    TTS_AUDIO,
    TTS_COMPLETE,
    ClientNotifier,
    OperatorEvents,
)
from core.llm import Completion
from core.session import ASSISTANT, USER, Session, SessionRegistry
from core.tts import Speech

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.5


class PipelineStage(str, Enum):
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    COMPLETING = "completing"
    SYNTHESIZING = "synthesizing"


@dataclass
class TurnOutcome:
    session_id: str
    stage: PipelineStage = PipelineStage.IDLE  # last stage entered
    transcription: Optional[Transcription] = None
    completion: Optional[Completion] = None
    speech: Optional[Speech] = None
    ignored: bool = False  # empty or low-confidence transcript
    discarded: bool = False  # session vanished before the result arrived
    total_ms: int = 0

    @property
    def completed(self) -> bool:
        return self.speech is not None and not self.discarded


class ConversationPipeline:
    """
    Runs one turn for a session against the three provider collaborators.

    Args:
        transcriber: object with async transcribe(audio) -> Transcription.
        llm: object with async complete(messages) -> Completion.
        synthesizer: object with async synthesize(text) -> Speech.
        registry: SessionRegistry holding the conversation history.
        notify: async (session_id, event_type, payload) for client events.
        events: OperatorEvents for the owning process.
        min_confidence: Transcripts below this are not escalated to the LLM.
        metrics: Optional module with record_turn_completed / record_turn_ignored /
            record_collaborator_failure.
    """

    def __init__(
        self,
        transcriber: Any,
        llm: Any,
        synthesizer: Any,
        registry: SessionRegistry,
        notify: Optional[ClientNotifier] = None,
        events: Optional[OperatorEvents] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        metrics: Optional[Any] = None,
    ):
        self.transcriber = transcriber
        self.llm = llm
        self.synthesizer = synthesizer
        self.registry = registry
        self.min_confidence = min_confidence
        self._notify = notify
        self._events = events
        self._metrics = metrics
        self._stages: Dict[str, PipelineStage] = {}

    def stage(self, session_id: str) -> PipelineStage:
        return self._stages.get(session_id, PipelineStage.IDLE)

    def _alive(self, session: Session) -> bool:
        return self.registry.get(session.id) is session

    async def _send(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self._notify:
            await self._notify(session_id, event_type, payload)

    def _publish(self, event: str, **data: Any) -> None:
        if self._events:
            self._events.publish(event, **data)

    async def _call(self, outcome: TurnOutcome, stage: PipelineStage, call: Awaitable[Any]) -> Any:
        outcome.stage = stage
        self._stages[outcome.session_id] = stage
        try:
            return await call
        except Exception as e:
            if self._metrics and hasattr(self._metrics, "record_collaborator_failure"):
                self._metrics.record_collaborator_failure(stage.value)
            raise CollaboratorError(stage.value, str(e) or type(e).__name__, cause=e) from e

    def _discard(self, outcome: TurnOutcome) -> TurnOutcome:
        logger.info("Session %s destroyed during %s; discarding result", outcome.session_id, outcome.stage.value)
        outcome.discarded = True
        return outcome

    async def run(self, session_id: str, audio: bytes) -> TurnOutcome:
        """Process one turn of audio. Raises CollaboratorError if a provider call fails."""
        outcome = TurnOutcome(session_id=session_id)
        session = self.registry.get(session_id)
        if session is None:
            return self._discard(outcome)
        t0 = time.perf_counter()
        try:
            transcription = await self._call(outcome, PipelineStage.TRANSCRIBING, self.transcriber.transcribe(audio))
            outcome.transcription = transcription
            if not self._alive(session):
                return self._discard(outcome)
            await self._send(session_id, TRANSCRIPTION, {
                "text": transcription.text,
                "is_final": transcription.is_final,
                **describe(transcription.confidence),
            })
            self._publish(TRANSCRIPTION_COMPLETE, session_id=session_id, text=transcription.text)

            text = (transcription.text or "").strip()
            if not text or transcription.confidence < self.min_confidence:
                logger.info(
                    "Low confidence transcription or empty text for session %s: %r (%.2f)",
                    session_id, transcription.text, transcription.confidence,
                )
                outcome.ignored = True
                if self._metrics and hasattr(self._metrics, "record_turn_ignored"):
                    self._metrics.record_turn_ignored()
                return outcome

            session.append_message(USER, text)
            self.registry.touch(session_id)
            completion = await self._call(
                outcome, PipelineStage.COMPLETING, self.llm.complete(session.ordered_messages())
            )
            outcome.completion = completion
            if not self._alive(session):
                return self._discard(outcome)
            session.append_message(ASSISTANT, completion.text)
            await self._send(session_id, LLM_RESPONSE, completion.to_dict())
            self._publish(LLM_RESPONSE_COMPLETE, session_id=session_id, text=completion.text)

            speech = await self._call(outcome, PipelineStage.SYNTHESIZING, self.synthesizer.synthesize(completion.text))
            outcome.speech = speech
            if not self._alive(session):
                return self._discard(outcome)
            await self._send(session_id, TTS_AUDIO, {
                "audio": base64.b64encode(speech.audio).decode("ascii"),
                "duration": speech.duration,
                "content_type": speech.content_type,
            })
            self._publish(TTS_COMPLETE, session_id=session_id, audio_bytes=len(speech.audio))
            self.registry.touch(session_id)

            outcome.total_ms = round((time.perf_counter() - t0) * 1000)
            if self._metrics and hasattr(self._metrics, "record_turn_completed"):
                self._metrics.record_turn_completed(outcome.total_ms)
            return outcome
        finally:
            self._stages.pop(session_id, None)

    async def report_failure(self, session_id: str, exc: BaseException) -> None:
        """Deliver a failed turn to the client and the operator stream. Used as TurnGuard.on_failure."""
        if isinstance(exc, CollaboratorError):
            stage, message = exc.stage, f"Failed to process audio: {exc}"
        else:
            stage, message = "pipeline", f"Failed to process audio: {exc}"
        logger.error("Error processing audio for session %s: %s", session_id, exc)
        self._publish(OPERATOR_ERROR, session_id=session_id, stage=stage, message=message)
        if self.registry.get(session_id) is None:
            return
        await self._send(session_id, ERROR, {"message": message})
