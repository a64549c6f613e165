"""JSON schema helpers for tool parameters."""

from math import isfinite
from typing import Any

from msgspec.json import schema_components

from iterai.interface import MISSING, Maybe, is_present

REF_PREFIX = "#/$defs/"


def is_json_compatible(value: Any) -> bool:
    """Whether `value` survives a JSON round trip unchanged in meaning."""
    match value:
        case None | str() | bool() | int():
            return True
        case float():
            return isfinite(value)
        case list() | tuple():
            return all(is_json_compatible(item) for item in value)
        case dict():
            return all(
                isinstance(key, str) and is_json_compatible(item)
                for key, item in value.items()
            )
        case _:
            return False


def _schema_hook(t: type) -> dict[str, Any] | None:
    # an `object` annotation accepts any payload
    if t is object:
        return {"type": "object"}
    return None


def _resolve(node: Any, defs: dict[str, Any]) -> Any:
    if isinstance(node, list):
        return [_resolve(item, defs) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str) and ref.startswith(REF_PREFIX):
        target = _resolve(defs.get(ref.removeprefix(REF_PREFIX), {}), defs)
        siblings = {k: _resolve(v, defs) for k, v in node.items() if k != "$ref"}
        return {**target, **siblings}
    return {key: _resolve(value, defs) for key, value in node.items()}


def inline_schema(type_: Any, default: Maybe[Any] = MISSING) -> dict[str, Any]:
    """
    JSON schema of `type_` with every `$ref` replaced by its definition.

    Chat completion backends reject tool parameters that point at shared
    definitions, so nested structs are copied into the property using them:

        class Point(Struct):
            x: int
            y: int

        inline_schema(Point)
        {
            "type": "object",
            "title": "Point",
            "properties": {"x": {"type": "integer"}, "y": {"type": "integer"}},
            "required": ["x", "y"],
        }

    `default` is recorded only when it is JSON compatible.
    """
    (schema,), defs = schema_components(
        (type_,), schema_hook=_schema_hook, ref_template=REF_PREFIX + "{name}"
    )
    resolved: dict[str, Any] = _resolve(schema, defs) if defs else dict(schema)
    if is_present(default) and is_json_compatible(default):
        resolved.setdefault("default", default)
    return resolved
