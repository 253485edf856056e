"""
Best-effort JSON snapshots of arbitrary tool output.

Tool results are persisted with the assistant turn and echoed to the
model, so they must always serialize. Clean values are deep-copied
through json; anything else (cycles, NaN, datetimes, SDK objects) goes
through a bounded copy that caps container sizes and depth and falls
back to str().
"""

from __future__ import annotations

import dataclasses
import json
import math
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

DEFAULT_MAX_KEYS = 50
DEFAULT_MAX_DEPTH = 8
MAX_STRING_FALLBACK = 500

_CIRCULAR = "[Circular]"


def to_jsonable(value: Any, max_keys: int = DEFAULT_MAX_KEYS, max_depth: int = DEFAULT_MAX_DEPTH) -> Any:
    """Return a JSON-serializable snapshot of ``value``.

    The snapshot is a copy: mutating it never touches the original.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    try:
        return json.loads(json.dumps(value, allow_nan=False))
    except (TypeError, ValueError, RecursionError):
        return _bounded_copy(value, max_keys, max_depth, 0, set())


def dumps(value: Any, max_keys: int = DEFAULT_MAX_KEYS) -> str:
    """Serialize any value to a JSON string without raising."""
    return json.dumps(to_jsonable(value, max_keys=max_keys), ensure_ascii=False)


def _bounded_copy(value: Any, max_keys: int, max_depth: int, depth: int, seen: set) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Enum):
        return _bounded_copy(value.value, max_keys, max_depth, depth, seen)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"

    if depth >= max_depth:
        return _fallback_str(value)

    marker = id(value)
    if marker in seen:
        return _CIRCULAR
    seen.add(marker)
    try:
        if isinstance(value, BaseModel):
            value = value.model_dump()
        elif dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}

        if isinstance(value, dict):
            out = {}
            for index, (key, item) in enumerate(value.items()):
                if index >= max_keys:
                    out["__truncated__"] = len(value) - max_keys
                    break
                out[str(key)] = _bounded_copy(item, max_keys, max_depth, depth + 1, seen)
            return out

        if isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
            out_list = [
                _bounded_copy(item, max_keys, max_depth, depth + 1, seen)
                for item in items[:max_keys]
            ]
            if len(items) > max_keys:
                out_list.append(f"... {len(items) - max_keys} more")
            return out_list

        return _fallback_str(value)
    finally:
        seen.discard(marker)


def _fallback_str(value: Any) -> str:
    try:
        text = str(value)
    except Exception:
        text = f"<unprintable {type(value).__name__}>"
    if len(text) > MAX_STRING_FALLBACK:
        return text[:MAX_STRING_FALLBACK] + "..."
    return text
