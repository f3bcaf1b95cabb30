"""
Client implementations for the supported LLM backends.

This package provides a unified interface to multiple backends through the
BaseProvider abstraction. The set of backends is closed: new ones are added
to ``PROVIDER_TYPES``.
"""

from .base import (
    AuthenticationError,
    BaseProvider,
    InvalidRequestError,
    PermanentProviderError,
    ProviderError,
    ProviderExhaustedError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)
from .gemini import GeminiProvider
from .http import HTTPProvider
from .openai import OpenAICompatibleProvider

__all__ = [
    "BaseProvider",
    "HTTPProvider",
    "ProviderError",
    "TransientProviderError",
    "RateLimitError",
    "ProviderTimeoutError",
    "PermanentProviderError",
    "AuthenticationError",
    "InvalidRequestError",
    "ProviderNotFoundError",
    "ProviderExhaustedError",
    "OpenAICompatibleProvider",
    "GeminiProvider",
    "PROVIDER_TYPES",
    "create_provider",
    "get_supported_provider_types",
]

PROVIDER_TYPES: dict[str, type[BaseProvider]] = {
    "openai": OpenAICompatibleProvider,
    "gemini": GeminiProvider,
}


def create_provider(name: str, provider_type: str, **kwargs) -> BaseProvider:
    """
    Create a provider client.

    Args:
        name: Registry name of the provider (e.g., "openai", "grok")
        provider_type: Client implementation ("openai" or "gemini")
        **kwargs: Provider configuration (api_key, base_url, default_model, ...)

    Returns:
        Configured provider instance

    Raises:
        ValueError: If the provider type is not supported

    Example:
        >>> grok = create_provider("grok", "openai", api_key="xai-...",
        ...                        base_url="https://api.x.ai/v1")
    """
    provider_type = provider_type.lower().strip()
    provider_class = PROVIDER_TYPES.get(provider_type)
    if provider_class is None:
        raise ValueError(f"Unsupported provider type: {provider_type}")
    return provider_class(name, **kwargs)


def get_supported_provider_types() -> list[str]:
    """Get list of supported provider types."""
    return list(PROVIDER_TYPES)
