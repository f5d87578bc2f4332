"""
Speech-to-text collaborators.

Each backend exposes `async transcribe(audio: bytes) -> Transcription` and is
selected by name at construction (`create_transcriber`). Raw 16 kHz 16-bit
mono PCM is wrapped in a WAV header before upload; payloads that already carry
a RIFF header are passed through.
"""
import asyncio
import io
import logging
import os
import struct
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Optional

from core.confidence import whisper_confidence
from core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transcription:
    text: str
    confidence: float
    is_final: bool = True

    def to_dict(self):
        return {"text": self.text, "confidence": self.confidence, "is_final": self.is_final}


def raw_to_wav(raw: bytes, sample_rate: int = 16000, sample_width: int = 2) -> bytes:
    """Wrap raw PCM (16 kHz, 16-bit mono) in a minimal WAV header."""
    n = len(raw)
    # WAV header: 44 bytes
    header = bytearray(44)
    header[0:4] = b"RIFF"
    struct.pack_into("<I", header, 4, 36 + n)
    header[8:12] = b"WAVE"
    header[12:16] = b"fmt "
    struct.pack_into("<I", header, 16, 16)  # fmt chunk size
    struct.pack_into("<H", header, 20, 1)   # PCM
    struct.pack_into("<H", header, 22, 1)   # mono
    struct.pack_into("<I", header, 24, sample_rate)
    struct.pack_into("<I", header, 28, sample_rate * sample_width)
    struct.pack_into("<H", header, 32, sample_width)  # block align (mono)
    struct.pack_into("<H", header, 34, sample_width * 8)
    header[36:40] = b"data"
    struct.pack_into("<I", header, 40, n)
    return bytes(header) + raw


def ensure_wav(audio: bytes) -> bytes:
    if audio[:4] == b"RIFF":
        return audio
    return raw_to_wav(audio)


class OpenAITranscriber:
    """Hosted Whisper (v1/audio/transcriptions) via the official async client."""

    def __init__(self, settings: Any, client: Optional[Any] = None):
        self.settings = settings
        self._owns_client = client is None
        if client is None:
            import openai
            client = openai.AsyncOpenAI(api_key=settings.api_key)
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def transcribe(self, audio: bytes) -> Transcription:
        buf = io.BytesIO(ensure_wav(audio))
        buf.name = "audio.wav"
        kwargs = {
            "file": buf,
            "model": self.settings.model or "whisper-1",
            "response_format": "verbose_json",
        }
        if self.settings.language:
            kwargs["language"] = self.settings.language
        response = await self._client.audio.transcriptions.create(**kwargs)
        text = (getattr(response, "text", None) or "").strip()
        segments = getattr(response, "segments", None)
        return Transcription(text=text, confidence=whisper_confidence(text, segments), is_final=True)


class WhisperTranscriber:
    """
    Local openai-whisper model. Inference is blocking, so it runs in the default
    executor behind a lock shared by every session (one model, one GPU).
    """

    def __init__(self, settings: Any, model: Optional[Any] = None, device: Optional[str] = None):
        self.settings = settings
        if model is None:
            import whisper
            from config import resolve_device
            logger.info("Loading Whisper model %s", settings.model or "base")
            model = whisper.load_model(settings.model or "base", device=device or resolve_device())
        self._model = model
        self._lock = threading.Lock()

    def _transcribe_blocking(self, audio: bytes) -> Transcription:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as f:
            f.write(ensure_wav(audio))
            wav_path = f.name
        try:
            with self._lock:
                kwargs = {"language": self.settings.language} if self.settings.language else {}
                result = self._model.transcribe(wav_path, **kwargs)
        finally:
            if os.path.exists(wav_path):
                os.unlink(wav_path)
        text = (result.get("text") or "").strip()
        confidence = whisper_confidence(text, result.get("segments"), result.get("no_speech_prob"))
        return Transcription(text=text, confidence=confidence, is_final=True)

    async def transcribe(self, audio: bytes) -> Transcription:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transcribe_blocking, audio)


def create_transcriber(settings: Any, **kwargs: Any):
    """Build the STT backend named by settings.provider."""
    provider = (settings.provider or "").lower()
    if provider == "openai":
        return OpenAITranscriber(settings, **kwargs)
    if provider == "whisper":
        return WhisperTranscriber(settings, **kwargs)
    raise ConfigurationError(f"Unsupported STT provider: {settings.provider}")
