"""
Inference settings and error taxonomy shared by model providers
"""
from dataclasses import dataclass
from typing import Optional
from core.config import env_config


@dataclass(frozen=True)
class ModelSettings:
    """Endpoint and inference parameters for the chat-completions model.

    Read once at the start of every engine operation; never mutated by the engine.
    """
    api_endpoint: str
    model_name: str
    api_key: str = ''
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    request_timeout: int = 600

    @classmethod
    def from_config(cls) -> 'ModelSettings':
        """Build settings from environment configuration"""
        return cls(**env_config.model_api_config)


class LLMProviderError(Exception):
    """Base error raised by model providers

    Attributes:
        error_code: Short machine-readable code
        message: Human-readable message recorded on failed results
        detail: Technical detail for logs
    """

    error_code = 'ProviderError'

    def __init__(self, message: str, detail: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or message
        if error_code:
            self.error_code = error_code

    def __str__(self) -> str:
        return self.message


class TransportError(LLMProviderError):
    """Network failure or non-success HTTP status from the endpoint"""
    error_code = 'TransportError'


class TruncationError(LLMProviderError):
    """The model stopped because it hit the token limit"""
    error_code = 'TruncationError'


class ParseError(LLMProviderError):
    """Model output was not valid JSON where JSON was required"""
    error_code = 'ParseError'


class AbortedError(LLMProviderError):
    """Attempt was superseded or cancelled; never recorded in history"""
    error_code = 'AbortedError'
