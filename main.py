"""
Realtime voice relay server.

Clients stream microphone audio over /ws/voice; each finished turn is
transcribed, answered by the configured language model, synthesized and
streamed back. Provider configuration is read from the environment at import
time: a missing or invalid provider raises ConfigurationError and the server
does not start.
"""
import logging

import uvicorn

import config as _config
import metrics.relay_metrics as _relay_metrics
from api import create_app
from core.asr import create_transcriber
from core.events import OperatorEvents
from core.llm import create_llm
from core.session import SessionRegistry
from core.tts import create_synthesizer
from streaming.relay import VoiceRelay

logging.basicConfig(
    level=logging.DEBUG if _config.DEBUG else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("voice_relay")


def build_relay(provider_config=None) -> VoiceRelay:
    """Construct providers, registry and relay from configuration. Raises ConfigurationError."""
    provider_config = provider_config or _config.load_provider_config()
    logger.info("Providers: %r / %r / %r", provider_config.stt, provider_config.llm, provider_config.tts)
    events = OperatorEvents()
    registry = SessionRegistry(
        provider_config,
        idle_timeout_seconds=_config.SESSION_TIMEOUT_SECONDS,
        sweep_interval_seconds=_config.SESSION_SWEEP_INTERVAL_SECONDS,
        events=events,
    )
    return VoiceRelay(
        registry,
        transcriber=create_transcriber(provider_config.stt),
        llm=create_llm(provider_config.llm),
        synthesizer=create_synthesizer(provider_config.tts),
        events=events,
        silence_window_ms=_config.SILENCE_WINDOW_MS,
        min_turn_duration_ms=_config.MIN_TURN_DURATION_MS,
        max_buffer_bytes=_config.MAX_TURN_BUFFER_BYTES,
        min_confidence=_config.MIN_TRANSCRIPT_CONFIDENCE,
        metrics=_relay_metrics,
    )


logger.info("Loading voice relay providers...")
relay = build_relay()
app = create_app(relay, cors_origins=_config.get_cors_origins(), metrics=_relay_metrics)
logger.info("Voice relay ready.")


if __name__ == "__main__":
    logger.info("Voice relay starting on %s:%d (health: /health)", _config.HOST, _config.PORT)
    uvicorn.run(app, host=_config.HOST, port=_config.PORT)
