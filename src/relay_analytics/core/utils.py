"""Small helpers shared by the normalizer, sender and durable queue."""

from __future__ import annotations

import json
import re
import sys
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_FACTORS_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Render a datetime as ISO-8601 with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def to_json(value: Any) -> str:
    """Compact JSON encoding that tolerates datetimes and other non-JSON values."""
    return json.dumps(value, default=_json_default, separators=(",", ":"), ensure_ascii=False)


def json_size(value: Any) -> int:
    """Size in bytes of the UTF-8 encoded JSON form of ``value``."""
    return len(to_json(value).encode("utf-8"))


def parse_duration_ms(value: Union[int, float, str, None]) -> Optional[float]:
    """Convert a timeout setting to milliseconds.

    Numbers are taken as milliseconds; strings may carry a unit
    (``"500ms"``, ``"10s"``, ``"2m"``, ``"1h"``). Falsy values disable the timeout.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    if value is None or value is False or value == 0 or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)

    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")

    amount, unit = match.groups()
    return float(amount) * _DURATION_FACTORS_MS[(unit or "ms").lower()]


def is_browser_hosted() -> bool:
    """True when running inside a browser runtime such as Pyodide."""
    return sys.platform == "emscripten"
