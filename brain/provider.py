"""
brain/provider.py — Abstract LLM Provider

Every provider wrapper (Anthropic, OpenAI, Gemini, DeepSeek, Ollama) must
subclass BaseProvider and implement chat(). The agent loop only ever talks
to this contract; SDK specifics stay inside the wrapper.

Failures must surface as exceptions.ProviderError. The `retryable` flag is
advisory: the agent loop counts every failure toward its
consecutive-error limit and retries the same round until that limit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from brain.types import ChatMessage, ChatOptions, ChatResponse


class BaseProvider(ABC):
    """
    Abstract base for all LLM providers.

    Subclasses must implement:
      - chat() -> call the model, return a normalised ChatResponse

    Class attributes:
      - name:           provider id used by the router ("anthropic", "openai", ...)
      - supports_tools: set False on providers without function calling; the
                        agent loop then sends no tool declarations.
    """

    name: str = "base"
    supports_tools: bool = True

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def chat(self, messages: list[ChatMessage], options: ChatOptions) -> ChatResponse:
        """Send the conversation to the model and return its normalised response."""
        ...

    async def health_check(self) -> bool:
        """Return True if the provider is reachable. Override for real probes."""
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
