"""
Model provider base class and factory
"""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional
from genai.models import ModelSettings, LLMProviderError


class LLMAPIProvider(ABC):
    """Base class for chat-completions style model providers"""

    def __init__(self, settings: ModelSettings):
        self.settings = settings
        self._validate_config()
        self._initialize_client()

    @abstractmethod
    def _validate_config(self) -> None:
        """Validate provider-specific configuration"""

    def _initialize_client(self) -> None:
        """Initialize the underlying client, if the provider needs one"""

    @abstractmethod
    async def generate_content(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a single-shot request and return the decoded response body"""

    @abstractmethod
    def generate_stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        """Send a streaming request and yield visible text deltas"""


def create_model_provider(settings: ModelSettings, provider_name: Optional[str] = None) -> LLMAPIProvider:
    """Factory function to create a model provider instance"""
    from genai.models.providers.openai_compat import ChatCompletionsProvider

    name = (provider_name or 'openai').upper()
    if name not in ('OPENAI', 'OPENAI_COMPAT'):
        raise ValueError(f"Unsupported provider: {provider_name}")
    return ChatCompletionsProvider(settings)


__all__ = ['LLMAPIProvider', 'LLMProviderError', 'create_model_provider']
