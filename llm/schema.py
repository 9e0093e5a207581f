"""Structured-output schema helpers."""

import copy
import json
import re

_JSON_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

_NATURAL_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


def is_json_schema(schema) -> bool:
    """A dict whose ``type`` is a string is taken as JSON Schema already."""
    return isinstance(schema, dict) and isinstance(schema.get("type"), str)


def natural_to_json_schema(natural) -> dict:
    """Convert a "natural" schema of Python types into JSON Schema.

    ``{"title": str, "score": float, "tags": [str], "meta": {"ok": bool}}``
    becomes an object schema with every key required.  A list holds the item
    schema; an empty list or dict means "anything" of that container type.
    """
    if isinstance(natural, type):
        if natural in _NATURAL_TYPES:
            return {"type": _NATURAL_TYPES[natural]}
        if natural is list:
            return {"type": "array"}
        if natural is dict:
            return {"type": "object"}
        raise TypeError(f"Unsupported natural schema type: {natural.__name__}")
    if natural == []:
        return {"type": "array"}
    if natural == {}:
        return {"type": "object"}
    if isinstance(natural, list):
        return {"type": "array", "items": natural_to_json_schema(natural[0])}
    if isinstance(natural, dict):
        return {
            "type": "object",
            "properties": {key: natural_to_json_schema(value) for key, value in natural.items()},
            "required": list(natural.keys()),
        }
    if isinstance(natural, str):
        # Literal strings describe a string field ("name": "the user's name")
        return {"type": "string", "description": natural}
    raise TypeError(f"Unsupported natural schema value: {natural!r}")


def to_json_schema(schema: dict) -> dict:
    """Return a standalone JSON Schema for either schema flavour.

    Schemas already tagged ``"type": "json_schema"`` (OpenAI response-format
    style) are normalized to ``"type": "object"``; ``$schema`` is dropped.
    """
    if is_json_schema(schema):
        json_schema = copy.deepcopy(schema)
        if json_schema["type"] == "json_schema":
            json_schema["type"] = "object"
    else:
        json_schema = natural_to_json_schema(schema)
    json_schema.pop("$schema", None)
    return json_schema


def disallow_additional_properties(schema: dict) -> dict:
    """Set ``additionalProperties: false`` on every object in the schema (in place)."""
    pending = [schema]
    while pending:
        current = pending.pop()
        if isinstance(current, dict):
            if current.get("type") == "object":
                current["additionalProperties"] = False
            pending.extend(value for value in current.values() if isinstance(value, (dict, list)))
        elif isinstance(current, list):
            pending.extend(value for value in current if isinstance(value, (dict, list)))
    return schema


def parse_json_from_markdown(text: str):
    """Best-effort JSON decode of model text, unwrapping a ```json fence.

    Returns the decoded value, or None when the text holds no JSON.
    """
    if not isinstance(text, str):
        return None
    candidates = [match.strip() for match in _JSON_FENCE.findall(text)]
    candidates.append(text.strip())
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None
