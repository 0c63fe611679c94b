"""Language-model call abstraction for metamemory."""

from .generate import generate_structured
from .providers import LLMProvider, LLMResponse, get_provider, register_provider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "generate_structured",
    "get_provider",
    "register_provider",
]
