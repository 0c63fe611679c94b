"""Unit tests for metamemory.utils.output_schema module."""

import pytest
from pydantic import BaseModel, Field

from metamemory.utils.output_schema import _inline_refs, convert_output_schema


class Item(BaseModel):
    name: str = Field(description="Item name")
    tags: list[str] = Field(default_factory=list)


class Envelope(BaseModel):
    items: list[Item]
    primary: Item = Field(description="The primary item")
    note: str = ""


class TestConvertOutputSchema:
    """Tests for convert_output_schema function."""

    def test_none_schema(self):
        """Test that None schema returns None, None."""
        assert convert_output_schema(None) == (None, None)

    def test_name_is_snake_case(self):
        _, name = convert_output_schema(Envelope)
        assert name == "envelope"

        class ThreadSummaryResponse(BaseModel):
            summary: str

        _, name = convert_output_schema(ThreadSummaryResponse)
        assert name == "thread_summary_response"

    def test_every_property_required(self):
        """Fields with defaults are still listed as required."""
        schema, _ = convert_output_schema(Envelope)
        assert schema["required"] == ["items", "primary", "note"]
        assert schema["additionalProperties"] is False
        assert "default" not in schema["properties"]["note"]

    def test_nested_models_inlined_and_strict(self):
        schema, _ = convert_output_schema(Envelope)

        assert "$defs" not in schema
        item = schema["properties"]["items"]["items"]
        assert item["type"] == "object"
        assert item["additionalProperties"] is False
        assert item["required"] == ["name", "tags"]

        primary = schema["properties"]["primary"]
        assert "$ref" not in primary
        assert primary["description"] == "The primary item"

    def test_invalid_type(self):
        """Test that non-Pydantic class raises ValueError."""

        class NotAPydanticModel:
            pass

        with pytest.raises(ValueError, match="must be a Pydantic model class"):
            convert_output_schema(NotAPydanticModel)


class TestInlineRefs:
    """Tests for _inline_refs function."""

    def test_replaces_ref_with_definition(self):
        schema = {
            "properties": {"child": {"$ref": "#/$defs/Child", "description": "A child"}},
            "$defs": {"Child": {"type": "object", "properties": {"x": {"type": "integer"}}}},
        }
        _inline_refs(schema)
        child = schema["properties"]["child"]
        assert child["type"] == "object"
        assert child["properties"] == {"x": {"type": "integer"}}
        assert child["description"] == "A child"

    def test_unknown_ref_left_alone(self):
        schema = {"properties": {"child": {"$ref": "#/$defs/Missing"}}, "$defs": {}}
        _inline_refs(schema)
        assert schema["properties"]["child"] == {"$ref": "#/$defs/Missing"}
