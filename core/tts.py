"""
Text-to-speech collaborators.

Each backend exposes `async synthesize(text) -> Speech`. Both hosted backends
return MP3; duration is an estimate from the payload size since decoding is
left to the client.
"""
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from core.errors import ConfigurationError

# 128 kbps MP3 = 16000 bytes/sec
MP3_BYTES_PER_SECOND = 16000

ELEVENLABS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
ELEVENLABS_DEFAULT_VOICE = "21m00Tcm4TlvDq8ikWAM"


@dataclass(frozen=True)
class Speech:
    audio: bytes
    duration: float
    content_type: str = "audio/mpeg"


def estimate_duration(audio: bytes, bytes_per_second: int = MP3_BYTES_PER_SECOND) -> float:
    return round(len(audio) / bytes_per_second, 3) if audio else 0.0


class OpenAISpeech:
    """v1/audio/speech via the official OpenAI async client."""

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

    async def synthesize(self, text: str) -> Speech:
        response = await self._client.audio.speech.create(
            model=self.settings.model or "tts-1",
            voice=self.settings.voice or "alloy",
            input=text,
            response_format="mp3",
            speed=self.settings.speed or 1.0,
        )
        audio = response.content
        return Speech(audio=audio, duration=estimate_duration(audio))


class ElevenLabsSpeech:
    """ElevenLabs REST text-to-speech, called with httpx."""

    def __init__(self, settings: Any, client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def synthesize(self, text: str) -> Speech:
        url = ELEVENLABS_URL.format(voice_id=self.settings.voice or ELEVENLABS_DEFAULT_VOICE)
        response = await self._client.post(
            url,
            headers={
                "Accept": "audio/mpeg",
                "Content-Type": "application/json",
                "xi-api-key": self.settings.api_key or "",
            },
            json={
                "text": text,
                "model_id": self.settings.model or "eleven_turbo_v2_5",
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.5},
            },
        )
        response.raise_for_status()
        audio = response.content
        return Speech(audio=audio, duration=estimate_duration(audio))


def create_synthesizer(settings: Any, **kwargs: Any):
    """Build the TTS backend named by settings.provider."""
    provider = (settings.provider or "").lower()
    if provider == "openai":
        return OpenAISpeech(settings, **kwargs)
    if provider == "elevenlabs":
        return ElevenLabsSpeech(settings, **kwargs)
    raise ConfigurationError(f"Unsupported TTS provider: {settings.provider}")
