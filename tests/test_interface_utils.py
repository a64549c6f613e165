import math

from msgspec import UNSET, Struct

from iterai.interface import MISSING, is_present, is_set, supports_equality
from iterai.tools.schema import inline_schema, is_json_compatible


class Point(Struct):
    x: int
    y: int


class Segment(Struct):
    start: Point
    end: Point


def test_is_json_compatible_accepts_scalar_types() -> None:
    assert is_json_compatible(None)
    assert is_json_compatible(42)
    assert is_json_compatible(("text", True))


def test_is_json_compatible_rejects_bad_numbers_and_objects() -> None:
    assert not is_json_compatible(float("inf"))
    assert not is_json_compatible(math.nan)
    assert not is_json_compatible((object(),))
    assert not is_json_compatible({1: "non-string key"})


def test_is_present_and_missing_marker() -> None:
    assert is_present("value")
    assert is_present(None)
    assert not is_present(MISSING)
    assert not bool(MISSING)


def test_is_set_uses_msgspec_unset_sentinel() -> None:
    assert not is_set(UNSET)
    assert is_set("anything")


def test_supports_equality_accepts_hashable_values() -> None:
    assert supports_equality("sunny")
    assert supports_equality(42)
    assert supports_equality(("a", 1))


def test_supports_equality_rejects_unhashable_none_and_nan() -> None:
    assert not supports_equality(None)
    assert not supports_equality(["list"])
    assert not supports_equality({"k": "v"})
    assert not supports_equality(math.nan)


def test_inline_schema_expands_nested_refs() -> None:
    schema = inline_schema(Segment)

    assert "$ref" not in str(schema)
    assert schema["properties"]["start"]["properties"]["x"] == {"type": "integer"}


def test_inline_schema_records_json_default() -> None:
    assert inline_schema(int, 3) == {"type": "integer", "default": 3}
    assert "default" not in inline_schema(int, object())
