"""Unit tests for metamemory.tokens module."""

import json
import math

from metamemory.tokens import (
    as_text,
    entry_text,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)


class TestEstimateTokens:
    """Tests for estimate_tokens function."""

    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_ceil_division(self):
        # 'hello world' = 11 chars -> ceil(11/4) = 3
        assert estimate_tokens("hello world") == 3

    def test_exact_multiple(self):
        assert estimate_tokens("abcdefgh") == 2


class TestEntryText:
    """Tests for entry_text function."""

    def test_plain_message(self):
        assert entry_text({"role": "user", "content": "hi"}) == "hi"

    def test_function_call(self):
        entry = {"type": "function_call", "name": "search", "arguments": '{"q": "x"}'}
        assert entry_text(entry) == 'search({"q": "x"})'

    def test_function_call_with_dict_arguments(self):
        entry = {"type": "function_call", "name": "search", "arguments": {"q": "x"}}
        assert entry_text(entry) == f"search({json.dumps({'q': 'x'})})"

    def test_function_call_output(self):
        entry = {"type": "function_call_output", "output": "3 results"}
        assert entry_text(entry) == "3 results"

    def test_missing_content(self):
        assert entry_text({"role": "assistant"}) == ""


class TestAsText:
    """Tests for as_text function."""

    def test_none(self):
        assert as_text(None) == ""

    def test_string_passthrough(self):
        assert as_text("abc") == "abc"

    def test_json_serializable(self):
        assert as_text([1, 2]) == "[1, 2]"

    def test_falls_back_to_str(self):
        value = object()
        assert as_text(value) == str(value)


class TestEstimateMessageTokens:
    """Tests for estimate_message_tokens and estimate_messages_tokens."""

    def test_object_content_via_json(self):
        msg = {"role": "assistant", "content": {"key": "value"}}
        expected = math.ceil(len(json.dumps({"key": "value"})) / 4)
        assert estimate_message_tokens(msg) == expected

    def test_function_output_counted(self):
        msg = {"type": "function_call_output", "id": "o1", "output": "x" * 40}
        assert estimate_message_tokens(msg) == 10

    def test_sums_tokens(self):
        messages = [
            {"role": "user", "content": "hello world"},  # 3 tokens
            {"role": "assistant", "content": "hi"},  # 1 token
        ]
        assert estimate_messages_tokens(messages) == 4

    def test_empty_list(self):
        assert estimate_messages_tokens([]) == 0
