"""Anthropic provider implementation."""

import json
import logging
import os
from typing import Any

from .base import LLMProvider, LLMResponse, register_provider

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


@register_provider("anthropic")
class AnthropicProvider(LLMProvider):
    """Anthropic provider. Structured output is requested through the system prompt."""

    def __init__(self, api_key: str | None = None):
        """
        Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key. If not provided, uses ANTHROPIC_API_KEY env var.
        """
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise ImportError(
                "Anthropic SDK not installed. Install it with: pip install metamemory[anthropic]"
            ) from None

        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Anthropic API key not provided. Set ANTHROPIC_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self.client = AsyncAnthropic(api_key=self.api_key)

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
        # Anthropic takes the system prompt as a separate parameter
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        chat_messages = [m for m in messages if m.get("role") != "system"]

        if output_schema:
            schema_json = json.dumps(output_schema, indent=2)
            system_parts.append(
                f"IMPORTANT: You must structure your response as valid JSON "
                f"that strictly conforms to this schema:\n\n{schema_json}\n\n"
                f"Return ONLY valid JSON that matches this schema. Do not include "
                f"any text, explanation, markdown code fences (```json or ```), or "
                f"formatting outside of the JSON structure."
            )

        request_params: dict[str, Any] = {
            "model": model,
            "messages": chat_messages,
            # max_tokens is required for Anthropic
            "max_tokens": max_tokens if max_tokens is not None else DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            request_params["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            request_params["temperature"] = temperature

        request_params.update(kwargs)

        try:
            response = await self.client.messages.create(**request_params)
            if not response:
                raise RuntimeError("Anthropic API returned no response")

            content = "".join(
                block.text for block in response.content if getattr(block, "type", None) == "text"
            )

            usage_data = response.usage
            input_tokens = usage_data.input_tokens if usage_data else 0
            output_tokens = usage_data.output_tokens if usage_data else 0

            return LLMResponse(
                content=content,
                usage={
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "total_tokens": input_tokens + output_tokens,
                },
                model=getattr(response, "model", None) or model,
                stop_reason=getattr(response, "stop_reason", None),
            )
        except Exception as e:
            raise RuntimeError(f"Anthropic API call failed: {str(e)}") from e
