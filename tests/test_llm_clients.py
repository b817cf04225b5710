import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from autoapprove.adapters.llm_clients import (  # noqa: E402
    OPENROUTER_BASE_URL,
    AnthropicModel,
    OpenAICompatibleModel,
    ProviderKeys,
    build_model,
    parse_model_spec,
)
from autoapprove.errors import APIError, MissingModelKeyError, ValidationError  # noqa: E402

ALL_KEYS = ProviderKeys("sk-openai", "sk-ant", "sk-or", "http://localhost:11434")


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class ParseModelSpecTests(unittest.TestCase):
    def test_inference(self):
        keys = ProviderKeys(openrouter_key="sk-or", ollama_host="http://localhost:11434")
        cases = {
            "gpt-4o": ("openai", "gpt-4o"),
            "o3-mini": ("openai", "o3-mini"),
            "claude-sonnet-4": ("anthropic", "claude-sonnet-4"),
            "anthropic/claude-3-5-haiku": ("anthropic", "claude-3-5-haiku"),
            "meta-llama/llama-3.1-70b": ("openrouter", "meta-llama/llama-3.1-70b"),
            "llama3.1": ("ollama", "llama3.1"),
            "deepseek-coder": ("openrouter", "deepseek-coder"),
        }
        for spec, expected in cases.items():
            with self.subTest(spec=spec):
                self.assertEqual(parse_model_spec(spec, keys), expected)

    def test_unknown_model_without_openrouter_goes_to_ollama(self):
        self.assertEqual(parse_model_spec("deepseek-coder", ProviderKeys()), ("ollama", "deepseek-coder"))

    def test_empty(self):
        with self.assertRaises(ValidationError):
            parse_model_spec("  ", ALL_KEYS)


class BuildModelTests(unittest.TestCase):
    def test_missing_key(self):
        with self.assertRaises(MissingModelKeyError):
            build_model("gpt-4o", ProviderKeys(anthropic_key="sk-ant"))

    def test_providers(self):
        self.assertIsInstance(build_model("claude-sonnet-4", ALL_KEYS), AnthropicModel)
        openrouter = build_model("meta-llama/llama-3.1-70b", ALL_KEYS)
        self.assertEqual(openrouter.base_url, OPENROUTER_BASE_URL)
        ollama = build_model("ollama/qwen2.5-coder", ALL_KEYS)
        self.assertEqual(ollama.base_url, "http://localhost:11434/v1")
        self.assertEqual(ollama.name, "ollama/qwen2.5-coder")


class CompletionTests(unittest.TestCase):
    def test_openai_completion(self):
        with patch("openai.OpenAI") as openai_cls:
            openai_cls.return_value.chat.completions.create.return_value = chat_response('{"ok": true}')
            model = OpenAICompatibleModel("openai", "gpt-4o", "sk-openai", attempts=1)
            text = model.complete("prompt", system="be careful", timeout=12)
        self.assertEqual(text, '{"ok": true}')
        self.assertEqual(openai_cls.call_args.kwargs["timeout"], 12)
        messages = openai_cls.return_value.chat.completions.create.call_args.kwargs["messages"]
        self.assertEqual([m["role"] for m in messages], ["system", "user"])

    def test_openrouter_sends_attribution_headers(self):
        with patch("openai.OpenAI") as openai_cls:
            openai_cls.return_value.chat.completions.create.return_value = chat_response("{}")
            model = OpenAICompatibleModel("openrouter", "x/y", "sk-or", base_url=OPENROUTER_BASE_URL, attempts=1)
            model.complete("prompt")
        kwargs = openai_cls.return_value.chat.completions.create.call_args.kwargs
        self.assertIn("HTTP-Referer", kwargs["extra_headers"])

    def test_empty_response_is_an_error(self):
        with patch("openai.OpenAI") as openai_cls:
            openai_cls.return_value.chat.completions.create.return_value = chat_response(None)
            model = OpenAICompatibleModel("openai", "gpt-4o", "sk-openai", attempts=1)
            with self.assertRaises(APIError):
                model.complete("prompt")

    def test_provider_failure_is_wrapped(self):
        with patch("openai.OpenAI") as openai_cls:
            openai_cls.return_value.chat.completions.create.side_effect = ValueError("bad request")
            model = OpenAICompatibleModel("openai", "gpt-4o", "sk-openai", attempts=3)
            with self.assertRaises(APIError) as ctx:
                model.complete("prompt")
        self.assertEqual(ctx.exception.service, "openai/gpt-4o")
        self.assertEqual(openai_cls.return_value.chat.completions.create.call_count, 1)

    def test_anthropic_joins_text_blocks(self):
        response = SimpleNamespace(content=[
            SimpleNamespace(type="text", text='{"a": '),
            SimpleNamespace(type="tool_use", text="ignored"),
            SimpleNamespace(type="text", text="1}"),
        ])
        with patch("anthropic.Anthropic") as anthropic_cls:
            anthropic_cls.return_value.messages.create.return_value = response
            model = AnthropicModel("claude-sonnet-4", "sk-ant", attempts=1)
            self.assertEqual(model.complete("prompt", system="sys"), '{"a": 1}')
            kwargs = anthropic_cls.return_value.messages.create.call_args.kwargs
        self.assertEqual(kwargs["system"], "sys")


if __name__ == "__main__":
    unittest.main()
