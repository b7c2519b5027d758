"""LLM providers for answer generation."""
from .providers import (
    PROVIDERS,
    AnthropicProvider,
    BaseLLMProvider,
    LLMResponse,
    OllamaProvider,
    OpenAIProvider,
    create_provider,
)

__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "BaseLLMProvider",
    "LLMResponse",
    "OllamaProvider",
    "OpenAIProvider",
    "create_provider",
]
