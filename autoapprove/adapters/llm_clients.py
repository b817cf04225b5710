"""
Language-model clients for OpenAI, OpenRouter, Ollama and Anthropic.

OpenRouter and Ollama speak the OpenAI chat-completions protocol, so one
class covers all three with a different base_url. SDKs are imported lazily
so an installation that only uses one provider never loads the other.
"""

import logging
from dataclasses import dataclass

from ..errors import APIError, MissingModelKeyError, ValidationError
from ..llm import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, DEFAULT_TIMEOUT, LanguageModel
from ..retry import call_with_retry, status_of

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_HEADERS = {
    "HTTP-Referer": "https://github.com/autoapprove/autoapprove-action",
    "X-Title": "autoapprove",
}
PROVIDERS = ("openai", "anthropic", "openrouter", "ollama")
OLLAMA_FAMILIES = ("llama", "mistral", "codellama", "phi", "qwen", "mixtral", "gemma")


@dataclass(frozen=True)
class ProviderKeys:
    openai_key: str = ""
    anthropic_key: str = ""
    openrouter_key: str = ""
    ollama_host: str = ""

    def available(self, provider: str) -> bool:
        return bool({
            "openai": self.openai_key,
            "anthropic": self.anthropic_key,
            "openrouter": self.openrouter_key,
            "ollama": self.ollama_host,
        }.get(provider))


def _call_model(name: str, fn, attempts: int) -> str:
    try:
        text = call_with_retry(fn, attempts=attempts, describe=f"{name} completion")
    except Exception as exc:
        raise APIError(name, "complete", exc, status_of(exc)) from exc
    if not text:
        raise APIError(name, "complete", "empty response")
    return text


class OpenAICompatibleModel(LanguageModel):
    """Chat-completions model behind the openai SDK."""

    def __init__(self, provider: str, model: str, api_key: str, base_url: str | None = None, attempts: int = 3):
        self.provider = provider
        self.model = model
        self.name = f"{provider}/{model}"
        self.api_key = api_key
        self.base_url = base_url
        self.attempts = attempts

    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> str:
        import openai

        client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=timeout, max_retries=0)
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        kwargs = {}
        if self.provider == "openrouter":
            kwargs["extra_headers"] = OPENROUTER_HEADERS

        def create() -> str:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )
            return response.choices[0].message.content or ""

        return _call_model(self.name, create, self.attempts)


class AnthropicModel(LanguageModel):
    """Claude models through the anthropic SDK."""

    def __init__(self, model: str, api_key: str, attempts: int = 3):
        self.model = model
        self.name = f"anthropic/{model}"
        self.api_key = api_key
        self.attempts = attempts

    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> str:
        import anthropic

        client = anthropic.Anthropic(api_key=self.api_key, timeout=timeout, max_retries=0)
        kwargs = {"system": system} if system else {}

        def create() -> str:
            response = client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,
            )
            return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

        return _call_model(self.name, create, self.attempts)


def parse_model_spec(spec: str, keys: ProviderKeys) -> tuple[str, str]:
    """
    Split a model spec into (provider, model).

    "provider/model" is taken literally when the prefix is a known provider
    ("anthropic/claude-..." but not "meta-llama/llama-3", which is an
    OpenRouter model id). Bare names are inferred from the model family and
    the configured keys, falling back to OpenRouter, then Ollama.
    """
    spec = spec.strip()
    if not spec:
        raise ValidationError("model", spec, "model name cannot be empty")
    if "/" in spec:
        provider, model = spec.split("/", 1)
        if provider in PROVIDERS:
            return provider, model
        return "openrouter", spec

    lowered = spec.lower()
    if "claude" in lowered:
        return "anthropic", spec
    if "gpt" in lowered or lowered.startswith(("o1", "o3", "o4")):
        return "openai", spec
    if any(family in lowered for family in OLLAMA_FAMILIES) and keys.ollama_host:
        return "ollama", spec
    if keys.openrouter_key:
        return "openrouter", spec
    return "ollama", spec


def build_model(spec: str, keys: ProviderKeys, attempts: int = 3) -> LanguageModel:
    provider, model = parse_model_spec(spec, keys)
    if not keys.available(provider):
        raise MissingModelKeyError(f"no credentials configured for {provider} (model {spec!r})")

    if provider == "anthropic":
        return AnthropicModel(model, keys.anthropic_key, attempts=attempts)
    if provider == "openai":
        return OpenAICompatibleModel("openai", model, keys.openai_key, attempts=attempts)
    if provider == "openrouter":
        return OpenAICompatibleModel(
            "openrouter", model, keys.openrouter_key, base_url=OPENROUTER_BASE_URL, attempts=attempts,
        )
    base_url = keys.ollama_host.rstrip("/")
    if not base_url.endswith("/v1"):
        base_url = f"{base_url}/v1"
    # Ollama ignores the key but the SDK requires one.
    return OpenAICompatibleModel("ollama", model, "ollama", base_url=base_url, attempts=attempts)
