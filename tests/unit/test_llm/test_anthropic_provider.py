"""Unit tests for metamemory.llm.providers.anthropic module."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from metamemory.llm.providers.anthropic import DEFAULT_MAX_TOKENS, AnthropicProvider


def make_provider(response):
    # Skip __init__ so the SDK is not needed
    provider = AnthropicProvider.__new__(AnthropicProvider)
    provider.client = MagicMock()
    provider.client.messages.create = AsyncMock(return_value=response)
    return provider


def message(*texts):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=30, output_tokens=8),
        model="claude-test",
        stop_reason="end_turn",
    )


class TestGenerate:
    """Tests for AnthropicProvider.generate."""

    @pytest.mark.asyncio
    async def test_schema_goes_into_system_prompt(self):
        provider = make_provider(message('{"summary": "ok"}'))

        response = await provider.generate(
            [
                {"role": "system", "content": "You are an archivist."},
                {"role": "user", "content": "summarize"},
            ],
            "claude-test",
            output_schema={"type": "object", "properties": {"summary": {"type": "string"}}},
            output_schema_name="thread_summary_response",
        )

        params = provider.client.messages.create.call_args.kwargs
        assert params["messages"] == [{"role": "user", "content": "summarize"}]
        assert params["max_tokens"] == DEFAULT_MAX_TOKENS
        assert params["system"].startswith("You are an archivist.")
        assert '"summary"' in params["system"]
        assert "Return ONLY valid JSON" in params["system"]
        assert response.content == '{"summary": "ok"}'
        assert response.usage == {"input_tokens": 30, "output_tokens": 8, "total_tokens": 38}
        assert response.stop_reason == "end_turn"

    @pytest.mark.asyncio
    async def test_text_blocks_joined(self):
        provider = make_provider(message('{"a": ', "1}"))
        response = await provider.generate([{"role": "user", "content": "x"}], "claude-test")
        assert response.content == '{"a": 1}'
        assert "system" not in provider.client.messages.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_explicit_max_tokens(self):
        provider = make_provider(message("x"))
        await provider.generate([{"role": "user", "content": "x"}], "claude-test", max_tokens=50)
        assert provider.client.messages.create.call_args.kwargs["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        provider = make_provider(None)
        provider.client.messages.create.side_effect = ConnectionError("reset")
        with pytest.raises(RuntimeError, match="Anthropic API call failed"):
            await provider.generate([{"role": "user", "content": "x"}], "claude-test")
