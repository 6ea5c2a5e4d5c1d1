"""Shared utility functions used across ESGFlow modules."""
from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value, default=str)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for non-negatives."""
    return int(math.floor(value + 0.5))


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite ``DateTime`` columns round-trip."""
    return datetime.now(UTC).replace(tzinfo=None)
