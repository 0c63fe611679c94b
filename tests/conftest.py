"""Shared pytest configuration and fixtures."""

import json
from unittest.mock import MagicMock

import pytest

from metamemory.llm.providers.base import LLMProvider, LLMResponse
from metamemory.types import Message, TopicThread


class FakeProvider(LLMProvider):
    """LLM provider that replays queued responses and records every request.

    Queued dicts/lists are sent as JSON, strings verbatim, and exceptions are
    raised from generate().
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    @property
    def prompts(self) -> list[str]:
        return [call["messages"][-1]["content"] for call in self.calls]

    async def generate(
        self,
        messages,
        model,
        max_tokens=None,
        temperature=None,
        output_schema=None,
        output_schema_name=None,
        **kwargs,
    ) -> LLMResponse:
        self.calls.append(
            {
                "messages": messages,
                "model": model,
                "max_tokens": max_tokens,
                "output_schema": output_schema,
                "output_schema_name": output_schema_name,
            }
        )
        if not self.responses:
            raise RuntimeError("FakeProvider has no queued response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, str):
            response = json.dumps(response)
        return LLMResponse(content=response, model=model, usage={"output_tokens": 1})


class FakeClock:
    """Manually advanced clock returning unix seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_thread(name: str, count: int, start: float = 1_700_000_000.0, **kwargs) -> TopicThread:
    """Build a thread with `count` alternating user/assistant messages named m0..m{count-1}."""
    messages = [
        Message(
            id=f"m{i}",
            role="user" if i % 2 == 0 else "assistant",
            content=f"message {i}",
            timestamp=start + i,
        )
        for i in range(count)
    ]
    return TopicThread(
        name=name,
        messages=messages,
        last_active=start + max(count - 1, 0),
        created_at=start,
        **kwargs,
    )


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_tracer():
    """Mock OpenTelemetry tracer."""
    tracer = MagicMock()
    span = MagicMock()
    span.__enter__ = MagicMock(return_value=span)
    span.__exit__ = MagicMock(return_value=False)
    tracer.start_as_current_span = MagicMock(return_value=span)
    return tracer
