"""Convert Pydantic response models to strict JSON schemas for structured output."""

import copy
from typing import Any

from pydantic import BaseModel


def convert_output_schema(
    output_schema: type[BaseModel] | None, context_id: str = ""
) -> tuple[dict[str, Any] | None, str | None]:
    """
    Convert a Pydantic model class to a strict JSON schema dict and name.

    Strict structured output requires every object to list all of its
    properties as required and to forbid additional properties, and it does
    not follow $ref pointers, so nested models are inlined.

    Args:
        output_schema: Pydantic v2 model class
        context_id: Optional context identifier for error messages (e.g., "tagger")

    Returns:
        Tuple of (schema_dict, schema_name), or (None, None) when output_schema is None

    Raises:
        ValueError: If output_schema is not a Pydantic model or conversion fails
    """
    if output_schema is None:
        return None, None

    if not hasattr(output_schema, "model_json_schema"):
        raise ValueError(
            f"output_schema must be a Pydantic model class. Got: {type(output_schema)}"
        )

    try:
        schema_dict = output_schema.model_json_schema()
        _inline_refs(schema_dict)
        schema_dict.pop("$defs", None)
        _make_strict(schema_dict)
        return schema_dict, _snake_case(output_schema.__name__)
    except Exception as e:
        raise ValueError(
            f"Failed to convert output_schema to JSON schema"
            f"{f' for {context_id}' if context_id else ''}: {e}"
        ) from e


def _snake_case(name: str) -> str:
    chars = []
    for i, ch in enumerate(name):
        if ch.isupper() and i > 0:
            chars.append("_")
        chars.append(ch.lower())
    return "".join(chars)


def _make_strict(schema: Any) -> None:
    """Recursively mark objects as closed with every property required."""
    if isinstance(schema, dict):
        if schema.get("type") == "object":
            schema["additionalProperties"] = False
            if "properties" in schema:
                schema["required"] = list(schema["properties"].keys())
        # Defaults are not part of the strict-mode subset
        schema.pop("default", None)
        for prop_schema in schema.get("properties", {}).values():
            _make_strict(prop_schema)
        if "items" in schema:
            _make_strict(schema["items"])
        for key in ("anyOf", "oneOf", "allOf"):
            if key in schema:
                for sub_schema in schema[key]:
                    _make_strict(sub_schema)


def _inline_refs(schema: dict[str, Any]) -> None:
    """Replace $ref pointers with copies of the referenced $defs entry."""
    defs = schema.get("$defs", {})
    _inline_refs_recursive(schema, defs)


def _inline_refs_recursive(obj: Any, defs: dict[str, Any]) -> None:
    if isinstance(obj, dict):
        if "$ref" in obj:
            ref_name = obj["$ref"].split("/")[-1]
            if ref_name in defs:
                other_keys = {k: v for k, v in obj.items() if k != "$ref"}
                obj.clear()
                obj.update(copy.deepcopy(defs[ref_name]))
                # Keep annotations from the referencing site (description, title)
                for key, value in other_keys.items():
                    if key not in obj or key in ("description", "title"):
                        obj[key] = value
                _inline_refs_recursive(obj, defs)
            return

        for key, value in obj.items():
            if key != "$defs":
                _inline_refs_recursive(value, defs)
    elif isinstance(obj, list):
        for item in obj:
            _inline_refs_recursive(item, defs)
