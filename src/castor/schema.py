"""JSON schema generation and response_format normalization."""

from __future__ import annotations

from copy import deepcopy
import re
from typing import Any

from pydantic import BaseModel

from castor.errors import InvalidRequestError

SCHEMA_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

RESPONSE_FORMAT_TYPES = ("text", "json_object", "json_schema")

ResponseFormatInput = str | dict[str, Any] | type[BaseModel]


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict structured-output requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required', sorted
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated: dict[str, Any] = {}
        for key, value in node.items():
            updated[key] = walk(value)

        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                updated["required"] = sorted(properties.keys())

        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise InvalidRequestError(
            "Invalid schema: expected object schema",
            field="schema",
            constraint="object",
        )
    return result


def validate_schema_name(name: Any) -> str:
    """Return *name* when it is a valid structured-output schema name."""
    if not isinstance(name, str) or not SCHEMA_NAME_RE.match(name):
        raise InvalidRequestError(
            f"Invalid schema name: {name!r}",
            field="json_schema.name",
            constraint="^[a-zA-Z0-9_-]{1,64}$",
            hint="Use letters, digits, '_' or '-', at most 64 characters.",
        )
    return name


def validate_strict_schema(schema: dict[str, Any], *, path: str = "schema") -> None:
    """Raise unless every object level forbids extras and requires all properties."""
    if not isinstance(schema, dict):
        return
    properties = schema.get("properties")
    if schema.get("type") == "object" or isinstance(properties, dict):
        if schema.get("additionalProperties") is not False:
            raise InvalidRequestError(
                f"Strict schema requires additionalProperties: false at {path}",
                field=path,
                constraint="additionalProperties=false",
            )
        if isinstance(properties, dict):
            missing = sorted(set(properties) - set(schema.get("required", [])))
            if missing:
                raise InvalidRequestError(
                    f"Strict schema requires all properties at {path}; missing {missing}",
                    field=f"{path}.required",
                    constraint="all properties required",
                )
            for key, sub in properties.items():
                validate_strict_schema(sub, path=f"{path}.properties.{key}")
    for key in ("items", "anyOf", "oneOf", "allOf"):
        sub = schema.get(key)
        if isinstance(sub, dict):
            validate_strict_schema(sub, path=f"{path}.{key}")
        elif isinstance(sub, list):
            for idx, item in enumerate(sub):
                validate_strict_schema(item, path=f"{path}.{key}.{idx}")
    for defs_key in ("$defs", "definitions"):
        defs = schema.get(defs_key)
        if isinstance(defs, dict):
            for key, sub in defs.items():
                validate_strict_schema(sub, path=f"{path}.{defs_key}.{key}")


def generate_schema(
    source: type[BaseModel] | dict[str, Any],
    *,
    strict: bool = False,
    name: str | None = None,
) -> dict[str, Any]:
    """Build a JSON schema from a pydantic model class or a plain mapping.

    Non-strict output is the object schema itself. Strict output is the
    structured-output wrapper ``{"name", "schema", "strict": True}``.
    """
    if isinstance(source, type) and issubclass(source, BaseModel):
        schema = source.model_json_schema()
        schema.pop("title", None)
        default_name = source.__name__
    elif isinstance(source, dict):
        schema = deepcopy(source)
        default_name = "response"
    else:
        raise InvalidRequestError(
            f"Cannot generate a schema from {type(source).__name__}",
            field="schema",
            constraint="pydantic model or mapping",
        )

    if schema.get("type") == "object" and "additionalProperties" not in schema:
        schema["additionalProperties"] = False
    if not strict:
        return schema
    return strict_wrap(name or default_name, schema)


def strict_wrap(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Wrap *schema* for strict structured output."""
    return {
        "name": validate_schema_name(name),
        "schema": to_strict_schema(schema),
        "strict": True,
    }


def normalize_response_format(value: ResponseFormatInput | None) -> dict[str, Any] | None:
    """Normalize caller input into ``{"type": ..., "json_schema": {...}}``.

    Accepts ``"text"``, ``"json_object"``, a pydantic model class, a bare
    schema, or an explicit ``{"type": "json_schema", "json_schema": {...}}``
    mapping. Strict schemas are validated here, before serialization.
    """
    if value is None:
        return None
    if isinstance(value, type) and issubclass(value, BaseModel):
        return {"type": "json_schema", "json_schema": generate_schema(value, strict=True)}
    if isinstance(value, str):
        if value == "json_schema":
            raise InvalidRequestError(
                "response_format 'json_schema' requires a schema",
                field="response_format",
                constraint="json_schema needs json_schema.schema",
                hint="Pass a pydantic model or {'type': 'json_schema', 'json_schema': {...}}.",
            )
        if value not in RESPONSE_FORMAT_TYPES:
            raise InvalidRequestError(
                f"Unknown response_format {value!r}",
                field="response_format",
                constraint=f"one of {RESPONSE_FORMAT_TYPES}",
            )
        return {"type": value}
    if not isinstance(value, dict):
        raise InvalidRequestError(
            f"Invalid response_format: {type(value).__name__}",
            field="response_format",
            constraint="string, mapping, or pydantic model",
        )

    fmt = dict(value)
    if "json_schema" not in fmt and (
        "properties" in fmt or fmt.get("type") == "object"
    ):
        # A bare JSON schema was passed.
        return {"type": "json_schema", "json_schema": strict_wrap("response", fmt)}
    fmt_type = fmt.get("type", "json_schema" if "json_schema" in fmt else None)
    if fmt_type not in RESPONSE_FORMAT_TYPES:
        raise InvalidRequestError(
            f"Unknown response_format type {fmt_type!r}",
            field="response_format.type",
            constraint=f"one of {RESPONSE_FORMAT_TYPES}",
        )
    if fmt_type != "json_schema":
        return {"type": fmt_type}

    definition = fmt.get("json_schema")
    if definition is None and "schema" in fmt:
        # Flat form: {"type": "json_schema", "name": ..., "schema": ...}
        definition = {k: fmt[k] for k in ("name", "description", "schema", "strict") if k in fmt}
    if not isinstance(definition, dict):
        raise InvalidRequestError(
            "response_format.json_schema must be a mapping",
            field="response_format.json_schema",
            constraint="mapping",
        )
    definition = dict(definition)
    if "schema" not in definition:
        raise InvalidRequestError(
            "response_format.json_schema.schema is required",
            field="response_format.json_schema.schema",
            constraint="required",
        )
    definition["name"] = validate_schema_name(definition.get("name", "response"))
    if definition.get("strict"):
        validate_strict_schema(definition["schema"], path="response_format.json_schema.schema")
    return {"type": "json_schema", "json_schema": definition}


def wants_json(response_format: dict[str, Any] | None) -> bool:
    """Return True when structured JSON output was requested."""
    return bool(response_format) and response_format.get("type") in (
        "json_object",
        "json_schema",
    )
