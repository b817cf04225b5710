"""
Language-model collaborator interface.

The engine only needs "text in, text out". Vendor clients live in
adapters/llm_clients.py; tests substitute an in-memory fake.
"""

from abc import ABC, abstractmethod

DEFAULT_MAX_TOKENS = 500
DEFAULT_TEMPERATURE = 0.0
DEFAULT_TIMEOUT = 30.0


class LanguageModel(ABC):
    """One configured model. Instances hold only immutable configuration."""

    name: str = "model"

    @abstractmethod
    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> str:
        """Return the raw text of one completion.

        Implementations retry transient failures themselves and raise
        APIError once they give up.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
