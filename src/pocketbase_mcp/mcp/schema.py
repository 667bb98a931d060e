"""Build pydantic argument models from tool input schemas.

Each registered tool carries a JSON Schema *object* definition.  Converting
it to a pydantic model lets the server reject malformed arguments before any
remote call is made, with field-level messages the caller can act on.
"""

from __future__ import annotations

import keyword
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

_JSON_TYPE_MAP: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": Union[int, float],
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _python_type(prop_schema: dict[str, Any]) -> Any:
    if "enum" in prop_schema:
        return Literal[tuple(prop_schema["enum"])]
    json_type = prop_schema.get("type", "string")
    if isinstance(json_type, list):
        return Union[tuple(_JSON_TYPE_MAP.get(t, Any) for t in json_type if t != "null")]
    return _JSON_TYPE_MAP.get(json_type, Any)


def _needs_alias(name: str) -> bool:
    return (
        not name.isidentifier()
        or keyword.iskeyword(name)
        or name.startswith(("_", "model_"))
        or hasattr(BaseModel, name)
    )


def json_schema_to_model(tool_name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Convert a JSON Schema object definition into a pydantic model class.

    Property names that are not usable as Python attributes (``from``,
    ``schema``...) are stored under a suffixed attribute with the original
    name as alias, so validation and dumping both use the wire name.
    """
    properties: dict[str, Any] = schema.get("properties", {})
    required = set(schema.get("required", []))

    fields: dict[str, Any] = {}
    for prop_name, prop_schema in properties.items():
        py_type = _python_type(prop_schema)
        description = prop_schema.get("description", "")
        extra: dict[str, Any] = {"description": description}
        attr = prop_name
        if _needs_alias(prop_name):
            attr = f"{prop_name.lstrip('_')}_field"
            extra["alias"] = prop_name

        if prop_name in required:
            fields[attr] = (py_type, Field(**extra))
        elif "default" in prop_schema:
            fields[attr] = (py_type, Field(default=prop_schema["default"], **extra))
        else:
            fields[attr] = (Optional[py_type], Field(default=None, **extra))

    class_name = "".join(part.capitalize() for part in tool_name.split("_")) + "Arguments"
    return create_model(
        class_name,
        __config__=ConfigDict(extra="ignore", populate_by_name=True),
        **fields,
    )


def validate_arguments(model: type[BaseModel], arguments: dict[str, Any] | None) -> dict[str, Any]:
    """Validate *arguments* and return them keyed by their wire names.

    Only keys the caller supplied (or that have schema defaults) are returned.
    Raises ``pydantic.ValidationError``.
    """
    instance = model.model_validate(arguments or {})
    return instance.model_dump(by_alias=True, exclude_unset=False, exclude_none=True)


def format_validation_error(exc: ValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "arguments"
        problems.append(f"{location}: {error['msg']}")
    return problems
