"""JSON serialization utilities for deployment log details and notifications."""

from __future__ import annotations

import base64
import datetime
import decimal
import json
from collections.abc import Mapping

_MAX_DETAIL_CHARS = 16_000


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        if obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, bytes):
        try:
            return obj.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(obj).decode("utf-8")
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    return str(obj)


def dumps_details(details: Mapping[str, object] | None) -> str:
    """Serialize structured log details, truncating oversized string values."""
    if not details:
        return "{}"
    trimmed: dict[str, object] = {}
    for key, value in details.items():
        if isinstance(value, str) and len(value) > _MAX_DETAIL_CHARS:
            value = value[: _MAX_DETAIL_CHARS - 3] + "..."
        trimmed[key] = value
    return json.dumps(trimmed, default=json_default, sort_keys=True)


def loads_details(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}
