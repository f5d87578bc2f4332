"""
Tests for the STT / LLM / TTS backends with mocked clients.
Hosted SDK clients are MagicMocks; httpx backends run against httpx.MockTransport.
Run: python3 -m unittest tests.test_providers -v
"""

import json
import struct
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx

from config import LLMSettings, STTSettings, TTSSettings
from core.asr import OpenAITranscriber, WhisperTranscriber, create_transcriber, ensure_wav, raw_to_wav
from core.errors import ConfigurationError
from core.llm import AnthropicChat, CustomEndpointChat, OpenAIChat, create_llm
from core.tts import ELEVENLABS_DEFAULT_VOICE, ElevenLabsSpeech, OpenAISpeech, create_synthesizer, estimate_duration

HISTORY = [
    {"role": "user", "content": "what's the weather"},
    {"role": "assistant", "content": "sunny"},
    {"role": "user", "content": "thanks"},
]


class TestWav(unittest.TestCase):

    def test_raw_to_wav_header(self):
        raw = b"\x00\x01" * 8
        wav = raw_to_wav(raw)
        self.assertEqual(len(wav), 44 + len(raw))
        self.assertEqual(wav[:4], b"RIFF")
        self.assertEqual(wav[8:12], b"WAVE")
        self.assertEqual(struct.unpack_from("<I", wav, 24)[0], 16000)
        self.assertEqual(struct.unpack_from("<I", wav, 40)[0], len(raw))
        self.assertEqual(wav[44:], raw)

    def test_ensure_wav_passes_riff_through(self):
        wav = raw_to_wav(b"\x00" * 4)
        self.assertIs(ensure_wav(wav), wav)
        self.assertEqual(ensure_wav(b"\x00" * 4)[:4], b"RIFF")


class TestTranscribers(unittest.IsolatedAsyncioTestCase):

    async def test_openai_transcriber(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(
            text="  hello world ",
            segments=[SimpleNamespace(avg_logprob=0.0, no_speech_prob=0.0)],
        ))
        stt = OpenAITranscriber(STTSettings(provider="openai", api_key="k"), client=client)
        result = await stt.transcribe(b"\x00" * 320)
        self.assertEqual(result.text, "hello world")
        self.assertAlmostEqual(result.confidence, 1.0)
        self.assertTrue(result.is_final)
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "whisper-1")
        self.assertEqual(kwargs["language"], "en")
        self.assertEqual(kwargs["file"].name, "audio.wav")
        self.assertEqual(kwargs["file"].getvalue()[:4], b"RIFF")

    async def test_openai_transcriber_without_segments_scores_text(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="", segments=None))
        stt = OpenAITranscriber(STTSettings(provider="openai", api_key="k"), client=client)
        result = await stt.transcribe(b"\x00" * 10)
        self.assertEqual(result.text, "")
        self.assertEqual(result.confidence, 0.0)

    async def test_local_whisper_transcriber(self):
        model = MagicMock()
        model.transcribe.return_value = {
            "text": " salam ",
            "segments": [{"avg_logprob": -0.1, "no_speech_prob": 0.0}],
        }
        stt = WhisperTranscriber(STTSettings(provider="whisper", model="base", language=None), model=model)
        result = await stt.transcribe(b"\x00" * 320)
        self.assertEqual(result.text, "salam")
        self.assertGreater(result.confidence, 0.85)
        args, kwargs = model.transcribe.call_args
        self.assertTrue(args[0].endswith(".wav"))
        self.assertEqual(kwargs, {})

    def test_factory(self):
        stt = create_transcriber(STTSettings(provider="OpenAI", api_key="k"), client=MagicMock())
        self.assertIsInstance(stt, OpenAITranscriber)
        with self.assertRaises(ConfigurationError):
            create_transcriber(STTSettings(provider="deepgram"))


class TestChatBackends(unittest.IsolatedAsyncioTestCase):

    async def test_openai_chat_prepends_system_prompt(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="You're welcome"))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
        ))
        settings = LLMSettings(provider="openai", api_key="k", system_prompt="Be brief.")
        completion = await OpenAIChat(settings, client=client).complete(HISTORY)
        self.assertEqual(completion.text, "You're welcome")
        self.assertEqual(completion.usage, {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15})
        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["messages"][0], {"role": "system", "content": "Be brief."})
        self.assertEqual(kwargs["messages"][1:], HISTORY)
        self.assertEqual(kwargs["model"], "gpt-4o-mini")
        self.assertEqual(kwargs["max_tokens"], 1000)
        self.assertEqual(kwargs["temperature"], 0.7)

    async def test_openai_chat_empty_choice_raises(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
        with self.assertRaises(ValueError):
            await OpenAIChat(LLMSettings(provider="openai", api_key="k"), client=client).complete(HISTORY)

    async def test_anthropic_chat_passes_system_separately(self):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Any time.")],
            usage=SimpleNamespace(input_tokens=20, output_tokens=4),
        ))
        settings = LLMSettings(provider="anthropic", api_key="k", system_prompt="Be brief.")
        completion = await AnthropicChat(settings, client=client).complete(HISTORY)
        self.assertEqual(completion.text, "Any time.")
        self.assertEqual(completion.usage["total_tokens"], 24)
        kwargs = client.messages.create.call_args.kwargs
        self.assertEqual(kwargs["system"], "Be brief.")
        self.assertEqual(kwargs["messages"], HISTORY)

    async def test_custom_endpoint(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "custom reply"}}],
                "usage": {"promptTokens": 7, "completionTokens": 2},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        settings = LLMSettings(provider="custom", api_key="secret", endpoint="http://llm.local/v1/chat")
        completion = await CustomEndpointChat(settings, client=client).complete(HISTORY)
        await client.aclose()
        self.assertEqual(completion.text, "custom reply")
        self.assertEqual(completion.usage["total_tokens"], 9)
        self.assertEqual(seen["url"], "http://llm.local/v1/chat")
        self.assertEqual(seen["auth"], "Bearer secret")
        self.assertEqual(seen["body"]["messages"], HISTORY)

    async def test_custom_endpoint_http_error_propagates(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        settings = LLMSettings(provider="custom", endpoint="http://llm.local/v1/chat")
        with self.assertRaises(httpx.HTTPStatusError):
            await CustomEndpointChat(settings, client=client).complete(HISTORY)
        await client.aclose()

    async def test_custom_endpoint_closes_own_client_only(self):
        settings = LLMSettings(provider="custom", endpoint="http://llm.local/v1/chat")
        owned = CustomEndpointChat(settings)
        await owned.aclose()
        self.assertTrue(owned._client.is_closed)

        shared = httpx.AsyncClient()
        await CustomEndpointChat(settings, client=shared).aclose()
        self.assertFalse(shared.is_closed)
        await shared.aclose()

    async def test_injected_sdk_client_left_open(self):
        client = MagicMock()
        client.close = AsyncMock()
        await OpenAIChat(LLMSettings(provider="openai", api_key="k"), client=client).aclose()
        await AnthropicChat(LLMSettings(provider="anthropic", api_key="k"), client=client).aclose()
        client.close.assert_not_awaited()

    def test_custom_endpoint_requires_url(self):
        with self.assertRaises(ConfigurationError):
            CustomEndpointChat(LLMSettings(provider="custom"), client=MagicMock())

    def test_factory(self):
        self.assertIsInstance(create_llm(LLMSettings(provider="anthropic"), client=MagicMock()), AnthropicChat)
        with self.assertRaises(ConfigurationError):
            create_llm(LLMSettings(provider="llama"))


class TestSpeechBackends(unittest.IsolatedAsyncioTestCase):

    async def test_openai_speech(self):
        client = MagicMock()
        client.audio.speech.create = AsyncMock(return_value=SimpleNamespace(content=b"\xff" * 16000))
        speech = await OpenAISpeech(TTSSettings(provider="openai", api_key="k"), client=client).synthesize("hi")
        self.assertEqual(speech.audio, b"\xff" * 16000)
        self.assertEqual(speech.duration, 1.0)
        self.assertEqual(speech.content_type, "audio/mpeg")
        kwargs = client.audio.speech.create.call_args.kwargs
        self.assertEqual(kwargs["voice"], "alloy")
        self.assertEqual(kwargs["input"], "hi")

    async def test_elevenlabs_speech(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("xi-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"mp3-bytes")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        settings = TTSSettings(provider="elevenlabs", api_key="xi")
        speech = await ElevenLabsSpeech(settings, client=client).synthesize("hello")
        await client.aclose()
        self.assertEqual(speech.audio, b"mp3-bytes")
        self.assertTrue(seen["url"].endswith(ELEVENLABS_DEFAULT_VOICE))
        self.assertEqual(seen["key"], "xi")
        self.assertEqual(seen["body"]["text"], "hello")
        self.assertEqual(seen["body"]["model_id"], "eleven_turbo_v2_5")

    async def test_elevenlabs_closes_own_client_only(self):
        settings = TTSSettings(provider="elevenlabs", api_key="xi")
        owned = ElevenLabsSpeech(settings)
        await owned.aclose()
        self.assertTrue(owned._client.is_closed)

        shared = httpx.AsyncClient()
        await ElevenLabsSpeech(settings, client=shared).aclose()
        self.assertFalse(shared.is_closed)
        await shared.aclose()

    def test_estimate_duration(self):
        self.assertEqual(estimate_duration(b""), 0.0)
        self.assertEqual(estimate_duration(b"\x00" * 8000), 0.5)

    def test_factory(self):
        self.assertIsInstance(create_synthesizer(TTSSettings(provider="openai"), client=MagicMock()), OpenAISpeech)
        with self.assertRaises(ConfigurationError):
            create_synthesizer(TTSSettings(provider="polly"))


if __name__ == "__main__":
    unittest.main()
