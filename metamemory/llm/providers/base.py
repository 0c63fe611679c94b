"""Base class for LLM providers."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

# Provider registry - providers register themselves here
_PROVIDER_REGISTRY: dict[str, type["LLMProvider"]] = {}

_PROVIDER_MODULES = {
    "openai": "openai",
    "anthropic": "anthropic",
}


def register_provider(name: str):
    """
    Decorator to register an LLM provider class.

    Usage:
        @register_provider("openai")
        class OpenAIProvider(LLMProvider):
            ...

    Args:
        name: Provider name (e.g., "openai", "anthropic")

    Returns:
        Decorator function
    """

    def decorator(cls: type["LLMProvider"]) -> type["LLMProvider"]:
        _PROVIDER_REGISTRY[name.lower()] = cls
        return cls

    return decorator


class LLMResponse(BaseModel):
    """Response from an LLM call."""

    content: str | None = None
    usage: dict[str, Any] | None = Field(default_factory=dict)
    model: str | None = None
    stop_reason: str | None = None


class LLMProvider(ABC):
    """Base class for LLM providers.

    Metamemory only needs one capability from a provider: a single-turn
    request that may carry a structured-output schema and returns text.
    """

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        output_schema: dict[str, Any] | None = None,
        output_schema_name: str | None = None,
        **kwargs,
    ) -> LLMResponse:
        """
        Make a chat completion request to the LLM.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            model: Model identifier (e.g., "gpt-4o-mini")
            max_tokens: Optional max output tokens
            temperature: Optional temperature parameter
            output_schema: Optional strict JSON schema the response must follow
            output_schema_name: Name for the schema (required by some providers)
            **kwargs: Provider-specific additional parameters

        Returns:
            LLMResponse with content, usage, model, and stop_reason
        """
        pass


def get_provider(provider_name: str, **kwargs) -> LLMProvider:
    """
    Get LLM provider instance by name from the registry.

    Provider modules are imported on first use so their SDKs stay optional.

    Args:
        provider_name: Name of the provider ("openai" or "anthropic")
        **kwargs: Provider-specific initialization parameters

    Returns:
        LLMProvider instance

    Raises:
        ValueError: If the provider is not found or not supported
        ImportError: If the provider's SDK is not installed
    """
    provider_name_lower = provider_name.lower()

    provider_class = _PROVIDER_REGISTRY.get(provider_name_lower)
    if provider_class:
        return provider_class(**kwargs)

    module_name = _PROVIDER_MODULES.get(provider_name_lower)
    if not module_name:
        available = ", ".join(sorted(_PROVIDER_MODULES.keys()))
        raise ValueError(
            f"Unknown LLM provider: {provider_name}. Supported providers: {available}."
        )

    # Importing the module triggers its @register_provider decorator
    try:
        if module_name == "openai":
            from . import openai  # noqa: F401
        elif module_name == "anthropic":
            from . import anthropic  # noqa: F401
    except ImportError as e:
        raise ImportError(
            f"Failed to import {provider_name} provider. "
            f"Install the required SDK with: pip install metamemory[{provider_name_lower}]"
        ) from e

    provider_class = _PROVIDER_REGISTRY.get(provider_name_lower)
    if not provider_class:
        raise ValueError(
            f"Provider {provider_name} was imported but not registered. "
            f"This is likely a bug in the provider implementation."
        )

    return provider_class(**kwargs)
