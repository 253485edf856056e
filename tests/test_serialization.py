"""
Tests for JSON-safe snapshots of tool inputs and outputs.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from ace_assistant.core.serialization import dumps, to_jsonable
from ace_assistant.models.tools import RowsTable


class Color(Enum):
    RED = "red"


@dataclass
class Point:
    x: int
    y: int


class TestToJsonable:
    def test_clean_values_are_deep_copies(self):
        original = {"rows": [{"a": 1}]}
        snapshot = to_jsonable(original)
        assert snapshot == original
        snapshot["rows"][0]["a"] = 2
        assert original["rows"][0]["a"] == 1

    def test_cycles_become_markers(self):
        value = {"name": "loop"}
        value["self"] = value
        assert to_jsonable(value) == {"name": "loop", "self": "[Circular]"}

    def test_non_finite_floats_stringified(self):
        assert to_jsonable({"a": float("nan"), "b": 1.5}) == {"a": "nan", "b": 1.5}

    def test_rich_types(self):
        snapshot = to_jsonable({
            "when": datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc),
            "day": date(2024, 1, 2),
            "amount": Decimal("1.10"),
            "color": Color.RED,
            "point": Point(1, 2),
            "blob": b"abc",
            "tags": {"x"},
        })
        assert snapshot == {
            "when": "2024-01-02T03:04:00+00:00",
            "day": "2024-01-02",
            "amount": "1.10",
            "color": "red",
            "point": {"x": 1, "y": 2},
            "blob": "<3 bytes>",
            "tags": ["x"],
        }

    def test_wide_containers_truncated(self):
        snapshot = to_jsonable({"items": list(range(10)), "bad": object()}, max_keys=3)
        assert snapshot["items"] == [0, 1, 2, "... 7 more"]

        wide = {f"k{i}": object() for i in range(5)}
        truncated = to_jsonable(wide, max_keys=2)
        assert truncated["__truncated__"] == 3
        assert len(truncated) == 3

    def test_depth_capped(self):
        value = {"a": {"b": {"c": {"d": object()}}}}
        snapshot = to_jsonable(value, max_depth=2)
        assert isinstance(snapshot["a"]["b"], str)

    def test_pydantic_models_dumped(self):
        assert to_jsonable(RowsTable(rows=[{"a": 1}])) == {
            "kind": "rows", "rows": [{"a": 1}], "columns": None, "meta": {},
        }

    def test_dumps_never_raises(self):
        value = [object()]
        value.append(value)
        decoded = json.loads(dumps(value))
        assert decoded[1] == "[Circular]"
