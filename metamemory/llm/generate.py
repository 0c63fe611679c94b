"""Structured single-turn generation used by the tagger and summarizer."""

from __future__ import annotations

import logging

from opentelemetry import trace
from pydantic import BaseModel

from ..utils.output_schema import convert_output_schema
from .providers.base import LLMProvider

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def generate_structured(
    provider: LLMProvider,
    *,
    model: str,
    prompt: str,
    schema: type[BaseModel],
    max_tokens: int | None = None,
    step: str = "metamemory",
) -> str:
    """Send one prompt with a structured-output schema and return the raw response text.

    The text is returned unparsed: callers own the decision of what a
    malformed response means for them.

    Args:
        provider: LLM provider to call
        model: Model identifier
        prompt: Fully rendered user prompt
        schema: Pydantic model describing the expected JSON response
        max_tokens: Optional cap on output tokens
        step: Name of the calling step, used for the span name

    Returns:
        Response content ("" if the model returned nothing)
    """
    output_schema, output_schema_name = convert_output_schema(schema, context_id=step)

    with tracer.start_as_current_span(f"metamemory.llm.{step}") as span:
        span.set_attribute("metamemory.model", model)
        span.set_attribute("metamemory.prompt_chars", len(prompt))

        response = await provider.generate(
            messages=[{"role": "user", "content": prompt}],
            model=model,
            max_tokens=max_tokens,
            output_schema=output_schema,
            output_schema_name=output_schema_name,
        )

        content = response.content or ""
        span.set_attribute("metamemory.response_chars", len(content))
        if response.usage:
            span.set_attribute("metamemory.output_tokens", response.usage.get("output_tokens", 0))
        logger.debug("%s response: %d chars from %s", step, len(content), response.model or model)
        return content
