"""OpenAI provider using the Chat Completions API with JSON-schema response formats."""

import logging
import os
from typing import Any

from .base import LLMProvider, LLMResponse, register_provider

logger = logging.getLogger(__name__)


@register_provider("openai")
class OpenAIProvider(LLMProvider):
    """OpenAI provider for tagging and summarization requests."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key. If not provided, uses OPENAI_API_KEY env var.
            base_url: Optional base URL for OpenAI-compatible endpoints.
                If not provided, uses OPENAI_BASE_URL or OpenAI's URL.
        """
        # Import OpenAI SDK only when this provider is used (lazy loading)
        try:
            from openai import AsyncOpenAI
        except ImportError:
            raise ImportError(
                "OpenAI SDK not installed. Install it with: pip install metamemory[openai]"
            ) from None

        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not provided. Set OPENAI_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self.base_url = base_url or os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
        self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

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
        request_params: dict[str, Any] = {
            "model": model,
            "messages": list(messages),
        }
        if max_tokens is not None:
            request_params["max_tokens"] = max_tokens
        if temperature is not None:
            request_params["temperature"] = temperature

        if output_schema:
            request_params["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": output_schema_name or "structured_response",
                    "strict": True,
                    "schema": output_schema,
                },
            }

        request_params.update(kwargs)

        try:
            response = await self.client.chat.completions.create(**request_params)
            if not response:
                raise RuntimeError("OpenAI API returned no response")

            content = ""
            stop_reason = None
            if response.choices:
                choice = response.choices[0]
                if not choice.message:
                    raise RuntimeError("OpenAI API returned no message")
                content = choice.message.content or ""
                stop_reason = choice.finish_reason

            usage = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
            if response.usage:
                usage["input_tokens"] = response.usage.prompt_tokens
                usage["output_tokens"] = response.usage.completion_tokens
                usage["total_tokens"] = response.usage.total_tokens

            return LLMResponse(
                content=content,
                usage=usage,
                model=response.model or model,
                stop_reason=stop_reason,
            )
        except Exception as e:
            # Re-raise with more context
            raise RuntimeError(f"OpenAI Chat Completions API call failed: {str(e)}") from e
