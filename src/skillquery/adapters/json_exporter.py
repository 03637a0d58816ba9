"""JSON rendering for Normalized Results.

- Results are pretty-printed; error objects stay on one line.
- Values JSON cannot express natively (datetimes, decimals, UUIDs, bytes from a
  database row) are converted instead of crashing the output step.
"""

from __future__ import annotations

import base64
import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID


def to_jsonable(value: Any) -> Any:
    """Fallback encoder for `json.dumps(default=...)`."""

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def render_json(result: Mapping[str, Any], *, compact: bool = False) -> str:
    if compact:
        return json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=to_jsonable)
    return json.dumps(result, ensure_ascii=False, indent=2, default=to_jsonable)
