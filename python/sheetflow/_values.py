"""Value comparison and edit coercion helpers."""

from __future__ import annotations

import datetime
import json
import math
import re
from typing import Any

from sheetflow._columns import DataType

_TRUTHY = ("true", "1")

# Leading decimal number, the prefix a lenient parser reads from "12.5 EUR".
_LEADING_NUMBER = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality used to suppress no-op writes.

    ``True`` never equals ``1`` here, NaN equals NaN, and containers are
    compared element-wise.  numpy values compare with ``array_equal``; other
    values whose ``==`` is not a plain bool fall back to their JSON encoding.
    """
    if a is b:
        return True
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if hasattr(a, "shape") or hasattr(b, "shape"):
        return _arrays_equal(a, b)
    try:
        result = a == b
        if isinstance(result, bool):
            return result
    except (TypeError, ValueError):
        pass
    try:
        return json.dumps(a, sort_keys=True, default=str) == json.dumps(
            b, sort_keys=True, default=str
        )
    except (TypeError, ValueError):
        return False


def _arrays_equal(a: Any, b: Any) -> bool:
    import numpy as np

    try:
        return bool(np.array_equal(a, b, equal_nan=True))
    except (TypeError, ValueError):
        # equal_nan needs a numeric dtype
        return bool(np.array_equal(a, b))


def _parse_float(raw: str) -> float:
    match = _LEADING_NUMBER.match(raw)
    if match is None:
        return 0.0
    return float(match.group())


def _parse_date(raw: str) -> datetime.datetime | datetime.date | None:
    text = raw.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            return datetime.date.fromisoformat(text)
        return datetime.datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Cannot parse {raw!r} as a date") from None


def coerce_value(data_type: DataType, raw: Any) -> Any:
    """Convert a raw edit to the column's declared type.

    Only strings are parsed; already-typed values pass through unchanged.
    Numbers and currency read the leading number of the text (``"12.5 EUR"``
    is ``12.5``) and fall back to ``0.0`` when there is none; booleans
    accept ``"true"``/``"1"``, empty dates become ``None`` and malformed
    dates raise ``ValueError``.
    """
    if not isinstance(raw, str):
        return raw
    if data_type in (DataType.NUMBER, DataType.CURRENCY):
        return _parse_float(raw)
    if data_type is DataType.BOOLEAN:
        return raw.strip().lower() in _TRUTHY
    if data_type is DataType.DATE:
        return _parse_date(raw)
    return raw
