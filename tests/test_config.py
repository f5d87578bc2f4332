"""
Tests for provider configuration loading. Environments are plain dicts; os.environ is not touched.
"""
import unittest

from config import load_provider_config
from core.errors import ConfigurationError

BASE_ENV = {
    "STT_PROVIDER": "openai",
    "LLM_PROVIDER": "openai",
    "TTS_PROVIDER": "openai",
    "OPENAI_API_KEY": "sk-test-123456",
}


def env(**overrides):
    out = dict(BASE_ENV)
    out.update(overrides)
    return {k: v for k, v in out.items() if v is not None}


class TestLoadProviderConfig(unittest.TestCase):
    def test_vendor_key_shared_across_stages(self):
        cfg = load_provider_config(env())
        self.assertEqual(cfg.stt.api_key, "sk-test-123456")
        self.assertEqual(cfg.llm.api_key, "sk-test-123456")
        self.assertEqual(cfg.tts.api_key, "sk-test-123456")
        self.assertEqual(cfg.llm.max_tokens, 1000)
        self.assertEqual(cfg.llm.temperature, 0.7)
        self.assertEqual(cfg.stt.language, "en")

    def test_stage_key_overrides_vendor_key(self):
        cfg = load_provider_config(env(LLM_API_KEY="llm-only"))
        self.assertEqual(cfg.llm.api_key, "llm-only")
        self.assertEqual(cfg.stt.api_key, "sk-test-123456")

    def test_missing_key_is_fatal(self):
        with self.assertRaises(ConfigurationError):
            load_provider_config(env(OPENAI_API_KEY=None))

    def test_unsupported_provider(self):
        with self.assertRaises(ConfigurationError) as ctx:
            load_provider_config(env(TTS_PROVIDER="polly"))
        self.assertIn("polly", str(ctx.exception))

    def test_empty_provider(self):
        with self.assertRaises(ConfigurationError):
            load_provider_config(env(LLM_PROVIDER=""))

    def test_local_whisper_needs_no_key(self):
        cfg = load_provider_config({
            "STT_PROVIDER": "whisper",
            "LLM_PROVIDER": "anthropic",
            "ANTHROPIC_API_KEY": "ak",
            "TTS_PROVIDER": "elevenlabs",
            "ELEVENLABS_API_KEY": "xi",
        })
        self.assertIsNone(cfg.stt.api_key)
        self.assertTrue(cfg.stt.model)
        self.assertEqual(cfg.llm.provider, "anthropic")
        self.assertEqual(cfg.tts.api_key, "xi")

    def test_custom_llm_requires_endpoint(self):
        with self.assertRaises(ConfigurationError):
            load_provider_config(env(LLM_PROVIDER="custom"))
        cfg = load_provider_config(env(LLM_PROVIDER="custom", LLM_ENDPOINT="http://llm.local/v1/chat"))
        self.assertEqual(cfg.llm.endpoint, "http://llm.local/v1/chat")

    def test_llm_tuning_and_system_prompt(self):
        cfg = load_provider_config(env(
            LLM_MAX_TOKENS="200", LLM_TEMPERATURE="0.1", LLM_SYSTEM_PROMPT="Answer in one sentence.",
        ))
        self.assertEqual(cfg.llm.max_tokens, 200)
        self.assertEqual(cfg.llm.temperature, 0.1)
        self.assertEqual(cfg.llm.system_prompt, "Answer in one sentence.")

    def test_repr_masks_keys(self):
        cfg = load_provider_config(env())
        self.assertNotIn("sk-test-123456", repr(cfg.stt))
        self.assertNotIn("sk-test-123456", repr(cfg))


if __name__ == "__main__":
    unittest.main()
