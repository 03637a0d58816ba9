"""Response normalization helpers.

Pure functions shared by every integration: classify a raw payload once, then
project it with small formatting helpers. Nothing here does I/O or keeps state.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from skillquery.core.domain.models import ApiError, Empty, Outcome, Success

LABEL_LIMIT = 80
TEXT_LIMIT = 200

# Messages upstreams use for "this resource does not exist".
NOT_FOUND_MESSAGES = frozenset(
    {
        "Not found.",
        "The requested resource does not exist",
        "Run not found",
    }
)


def error_message(raw: Any) -> str | None:
    """Return the upstream error message if `raw` is an error shape."""

    if isinstance(raw, dict):
        detail = raw.get("detail")
        if isinstance(detail, str):
            return detail
        error = raw.get("error")
        if isinstance(error, str):
            return error
        # Google APIs: {"error": {"code": 403, "message": "...", "status": "..."}}.
        # Records such as Trigger.dev runs also carry an `error` object, without code or status.
        if isinstance(error, dict) and isinstance(error.get("message"), str) and ("code" in error or "status" in error):
            return error["message"]
        return None
    if isinstance(raw, list):
        return None
    return f"unexpected response: {type(raw).__name__}"


def classify(raw: Any, data_key: str | None = None) -> Outcome:
    """Decide once whether `raw` is an error, empty, or a usable payload."""

    message = error_message(raw)
    if message is not None:
        return ApiError(message=message, not_found=message in NOT_FOUND_MESSAGES)

    if data_key is not None:
        items = raw.get(data_key) if isinstance(raw, dict) else None
    elif isinstance(raw, list):
        items = raw
    else:
        return Success(payload=raw)

    if not items:
        return Empty(raw=raw)
    if not isinstance(items, list):
        return Success(payload=raw)
    return Success(payload=raw, items=items)


def api_error_result(outcome: ApiError, kind: str = "api_error", **context: Any) -> dict[str, Any]:
    return {"error": kind, "message": truncate(outcome.message, TEXT_LIMIT), **context}


def resource_error_result(outcome: ApiError, what: str, **context: Any) -> dict[str, Any]:
    """Like `api_error_result`, but separates `not_found` from other failures."""

    if outcome.not_found:
        return {"error": "not_found", "message": f"{what} does not exist", **context}
    return api_error_result(outcome, **context)


def truncate(value: Any, limit: int = TEXT_LIMIT) -> str:
    if value is None:
        return ""
    text = str(value)
    return text[:limit]


def floor_to(value: float, digits: int = 2) -> float:
    factor = 10**digits
    # round() first so 0.29 * 100 does not floor to 28
    return math.floor(round(value * factor, 6)) / factor


def _compact(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def format_duration(ms: float | None) -> str:
    """Human readable duration: `500ms`, `1.5s`, `1.5min`."""

    if ms is None:
        return "N/A"
    if ms >= 60_000:
        return f"{_compact(floor_to(ms / 60_000, 1))}min"
    if ms >= 1_000:
        return f"{_compact(floor_to(ms / 1_000, 1))}s"
    return f"{math.floor(ms)}ms"


def duration_stats(values: Iterable[float]) -> dict[str, Any]:
    numbers = [float(v) for v in values if v is not None]
    if not numbers:
        return {"count": 0, "min_ms": None, "max_ms": None, "avg_ms": None}
    avg = sum(numbers) / len(numbers)
    return {
        "count": len(numbers),
        "min_ms": _compact(min(numbers)),
        "max_ms": _compact(max(numbers)),
        "avg_ms": math.floor(avg),
        "max_human": format_duration(max(numbers)),
        "avg_human": format_duration(avg),
    }


def count_by(values: Iterable[Any], default: str = "unknown") -> dict[str, int]:
    """Count occurrences, most frequent first."""

    counter = Counter(default if value is None else str(value) for value in values)
    return dict(sorted(counter.items(), key=lambda item: (-item[1], item[0])))


def day(timestamp: str | None) -> str | None:
    return timestamp[:10] if timestamp else None


def minute(timestamp: str | None) -> str | None:
    return timestamp[:16].replace("T", " ") if timestamp else None


def second(timestamp: str | None) -> str | None:
    return timestamp[:19] if timestamp else None


def ensure_prefix(value: str, prefix: str) -> str:
    """Add `prefix` unless already present (idempotent)."""

    return value if value.startswith(prefix) else f"{prefix}{value}"


def hours_ago(hours: float, now: datetime | None = None) -> str:
    """UTC timestamp `hours` before `now`, second precision, no offset suffix."""

    now = now or datetime.now(timezone.utc)
    return (now - timedelta(hours=hours)).strftime("%Y-%m-%dT%H:%M:%S")
