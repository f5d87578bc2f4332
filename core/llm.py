"""
Language-model collaborators.

Each backend exposes `async complete(messages) -> Completion`, where messages is
the session history as [{"role", "content"}] in chronological order. The
configured system prompt is added by the backend in whatever form its API
expects.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from core.errors import ConfigurationError


@dataclass(frozen=True)
class Completion:
    text: str
    usage: Optional[Dict[str, int]] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "usage": self.usage}


def _usage(prompt_tokens: Optional[int], completion_tokens: Optional[int]) -> Optional[Dict[str, int]]:
    if prompt_tokens is None and completion_tokens is None:
        return None
    prompt_tokens = prompt_tokens or 0
    completion_tokens = completion_tokens or 0
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def _with_system(messages: List[Dict[str, str]], system_prompt: Optional[str]) -> List[Dict[str, str]]:
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}] + list(messages)


class OpenAIChat:
    """Chat completions via the official OpenAI async client."""

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

    async def complete(self, messages: List[Dict[str, str]]) -> Completion:
        start = time.perf_counter()
        response = await self._client.chat.completions.create(
            model=self.settings.model or "gpt-4o-mini",
            messages=_with_system(messages, self.settings.system_prompt),
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        text = ""
        if response.choices:
            choice = response.choices[0]
            if choice.message and choice.message.content:
                text = choice.message.content
        if not text:
            raise ValueError("No response content from OpenAI")
        usage = None
        if response.usage:
            usage = _usage(response.usage.prompt_tokens, response.usage.completion_tokens)
        return Completion(text=text, usage=usage, duration_ms=int((time.perf_counter() - start) * 1000))


class AnthropicChat:
    """Messages API via the official Anthropic async client; system prompt passed separately."""

    def __init__(self, settings: Any, client: Optional[Any] = None):
        self.settings = settings
        self._owns_client = client is None
        if client is None:
            import anthropic
            client = anthropic.AsyncAnthropic(api_key=settings.api_key)
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def complete(self, messages: List[Dict[str, str]]) -> Completion:
        start = time.perf_counter()
        kwargs = {
            "model": self.settings.model or "claude-sonnet-4-20250514",
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "messages": list(messages),
        }
        if self.settings.system_prompt:
            kwargs["system"] = self.settings.system_prompt
        message = await self._client.messages.create(**kwargs)
        text = "".join(block.text for block in message.content if block.type == "text")
        if not text:
            raise ValueError("No response content from Anthropic")
        usage = None
        if message.usage:
            usage = _usage(message.usage.input_tokens, message.usage.output_tokens)
        return Completion(text=text, usage=usage, duration_ms=int((time.perf_counter() - start) * 1000))


class CustomEndpointChat:
    """Any OpenAI-compatible chat endpoint, called with httpx."""

    def __init__(self, settings: Any, client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        if not settings.endpoint:
            raise ConfigurationError("Custom endpoint URL is required for custom provider")
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def complete(self, messages: List[Dict[str, str]]) -> Completion:
        start = time.perf_counter()
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        response = await self._client.post(
            self.settings.endpoint,
            headers=headers,
            json={
                "model": self.settings.model or "default",
                "messages": _with_system(messages, self.settings.system_prompt),
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
            },
        )
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        text = ""
        if choices:
            text = ((choices[0].get("message") or {}).get("content")) or ""
        if not text:
            raise ValueError("No response content from custom endpoint")
        raw_usage = data.get("usage") or None
        usage = None
        if raw_usage:
            usage = _usage(
                raw_usage.get("prompt_tokens", raw_usage.get("promptTokens")),
                raw_usage.get("completion_tokens", raw_usage.get("completionTokens")),
            )
        return Completion(text=text, usage=usage, duration_ms=int((time.perf_counter() - start) * 1000))


def create_llm(settings: Any, **kwargs: Any):
    """Build the LLM backend named by settings.provider."""
    provider = (settings.provider or "").lower()
    if provider == "openai":
        return OpenAIChat(settings, **kwargs)
    if provider == "anthropic":
        return AnthropicChat(settings, **kwargs)
    if provider == "custom":
        return CustomEndpointChat(settings, **kwargs)
    raise ConfigurationError(f"Unsupported LLM provider: {settings.provider}")
