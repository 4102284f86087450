"""
Deterministic JSON serialization.

Webhook bodies and the payload hash stored on each LifecycleEvent are
produced from the same canonical form, so a stored hash always matches
the bytes that were sent.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_jsonable(data: Any) -> Any:
    """Round-trip through canonical JSON to get plain dict/list/str values."""
    return json.loads(canonicalize_json(data))


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON string: sorted keys, no whitespace,
    UUID/date/enum rendered as strings.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
        ensure_ascii=False,
    )


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
