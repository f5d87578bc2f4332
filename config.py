"""
Production configuration via environment variables.
Load with python-dotenv; no hardcoded API keys or secrets.
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from core.errors import ConfigurationError

load_dotenv()

# ----- Server -----
PORT = int(os.environ.get("PORT", "3000"))
HOST = os.environ.get("HOST", "0.0.0.0")
DEBUG = os.environ.get("VOICE_DEBUG", "").lower() in ("1", "true", "yes")

# ----- Turn taking -----
# Silence window measured from the most recent fragment before a turn is flushed
SILENCE_WINDOW_MS = float(os.environ.get("SILENCE_WINDOW_MS", "2000"))
# Silence-triggered flushes shorter than this are discarded (explicit end bypasses it)
MIN_TURN_DURATION_MS = float(os.environ.get("MIN_TURN_DURATION_MS", "500"))
# 10 MiB per turn; oldest fragments are evicted first
MAX_TURN_BUFFER_BYTES = int(os.environ.get("MAX_TURN_BUFFER_BYTES", str(10 * 1024 * 1024)))
MIN_TRANSCRIPT_CONFIDENCE = float(os.environ.get("MIN_TRANSCRIPT_CONFIDENCE", "0.5"))

# ----- Sessions -----
SESSION_TIMEOUT_SECONDS = float(os.environ.get("SESSION_TIMEOUT_SECONDS", str(30 * 60)))
SESSION_SWEEP_INTERVAL_SECONDS = float(os.environ.get("SESSION_SWEEP_INTERVAL_SECONDS", "60"))

# ----- Local Whisper backend (STT_PROVIDER=whisper) -----
# tiny, base, small, medium, large, large-v2, large-v3
WHISPER_MODEL = os.environ.get("WHISPER_MODEL", "base")
# auto | cuda | cpu
DEVICE = os.environ.get("DEVICE", "auto")


def resolve_device() -> str:
    if DEVICE != "auto":
        return DEVICE
    try:
        import torch
        return "cuda" if torch.cuda.is_available() else "cpu"
    except ImportError:
        return "cpu"


# ----- CORS (production: set to specific origins) -----
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


def get_cors_origins() -> list:
    """Return list of allowed CORS origins from env."""
    if CORS_ORIGINS == "*":
        return ["*"]
    return [o.strip() for o in CORS_ORIGINS.split(",") if o.strip()]


# ----- Providers -----
STT_PROVIDERS = ("openai", "whisper")
LLM_PROVIDERS = ("openai", "anthropic", "custom")
TTS_PROVIDERS = ("openai", "elevenlabs")

# Hosted backends fall back to the vendor's conventional env var
_VENDOR_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "elevenlabs": "ELEVENLABS_API_KEY",
}


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "None"
    if len(secret) > 6:
        return f"'{secret[:3]}...'"
    return "'***'"


@dataclass(frozen=True)
class STTSettings:
    provider: str
    api_key: Optional[str] = field(default=None, repr=False)
    model: Optional[str] = None
    language: Optional[str] = "en"

    def __repr__(self) -> str:
        return (
            f"STTSettings(provider={self.provider!r}, api_key={_mask(self.api_key)}, "
            f"model={self.model!r}, language={self.language!r})"
        )


@dataclass(frozen=True)
class LLMSettings:
    provider: str
    api_key: Optional[str] = field(default=None, repr=False)
    model: Optional[str] = None
    max_tokens: int = 1000
    temperature: float = 0.7
    system_prompt: Optional[str] = None
    endpoint: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"LLMSettings(provider={self.provider!r}, api_key={_mask(self.api_key)}, "
            f"model={self.model!r}, max_tokens={self.max_tokens!r}, "
            f"temperature={self.temperature!r}, endpoint={self.endpoint!r})"
        )


@dataclass(frozen=True)
class TTSSettings:
    provider: str
    api_key: Optional[str] = field(default=None, repr=False)
    model: Optional[str] = None
    voice: Optional[str] = None
    speed: float = 1.0

    def __repr__(self) -> str:
        return (
            f"TTSSettings(provider={self.provider!r}, api_key={_mask(self.api_key)}, "
            f"model={self.model!r}, voice={self.voice!r}, speed={self.speed!r})"
        )


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of the backends a session talks to."""
    stt: STTSettings
    llm: LLMSettings
    tts: TTSSettings


def _resolve_key(env, kind: str, provider: str) -> Optional[str]:
    explicit = env.get(f"{kind}_API_KEY")
    if explicit:
        return explicit
    env_name = _VENDOR_KEY_ENV.get(provider)
    return env.get(env_name) if env_name else None


def _require_provider(kind: str, name: str, supported: tuple) -> str:
    name = (name or "").strip().lower()
    if not name:
        raise ConfigurationError(f"{kind} configuration is required ({kind}_PROVIDER is empty)")
    if name not in supported:
        raise ConfigurationError(f"Unsupported {kind} provider: {name} (expected one of {', '.join(supported)})")
    return name


def _require_key(kind: str, provider: str, key: Optional[str]) -> None:
    if not key:
        env_name = _VENDOR_KEY_ENV.get(provider, f"{kind}_API_KEY")
        raise ConfigurationError(f"{kind} provider {provider!r} needs an API key: set {kind}_API_KEY or {env_name}")


def load_provider_config(env: Optional[dict] = None) -> ProviderConfig:
    """
    Build the provider snapshot from environment variables.

    Raises ConfigurationError when a provider is missing, unsupported, or lacks
    the credentials its hosted backend needs. The local whisper STT backend
    needs no key.
    """
    env = os.environ if env is None else env

    stt_provider = _require_provider("STT", env.get("STT_PROVIDER", "openai"), STT_PROVIDERS)
    stt_key = _resolve_key(env, "STT", stt_provider)
    if stt_provider != "whisper":
        _require_key("STT", stt_provider, stt_key)
    stt = STTSettings(
        provider=stt_provider,
        api_key=stt_key,
        model=env.get("STT_MODEL") or (WHISPER_MODEL if stt_provider == "whisper" else None),
        language=env.get("STT_LANGUAGE", "en") or None,
    )

    llm_provider = _require_provider("LLM", env.get("LLM_PROVIDER", "openai"), LLM_PROVIDERS)
    llm_key = _resolve_key(env, "LLM", llm_provider)
    endpoint = env.get("LLM_ENDPOINT") or None
    if llm_provider == "custom":
        if not endpoint:
            raise ConfigurationError("Custom endpoint URL is required for custom LLM provider (LLM_ENDPOINT)")
    else:
        _require_key("LLM", llm_provider, llm_key)
    llm = LLMSettings(
        provider=llm_provider,
        api_key=llm_key,
        model=env.get("LLM_MODEL") or None,
        max_tokens=int(env.get("LLM_MAX_TOKENS", "1000")),
        temperature=float(env.get("LLM_TEMPERATURE", "0.7")),
        system_prompt=env.get("LLM_SYSTEM_PROMPT") or None,
        endpoint=endpoint,
    )

    tts_provider = _require_provider("TTS", env.get("TTS_PROVIDER", "openai"), TTS_PROVIDERS)
    tts_key = _resolve_key(env, "TTS", tts_provider)
    _require_key("TTS", tts_provider, tts_key)
    tts = TTSSettings(
        provider=tts_provider,
        api_key=tts_key,
        model=env.get("TTS_MODEL") or None,
        voice=env.get("TTS_VOICE") or None,
        speed=float(env.get("TTS_SPEED", "1.0")),
    )
    return ProviderConfig(stt=stt, llm=llm, tts=tts)
