"""
Small helpers shared across the queue.
"""

import json
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

# A clock returns the current time as a naive UTC datetime.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the format stored in the jobs table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def encode_payload(payload: bytes | str | Mapping[str, Any]) -> bytes:
    """
    Normalize a job payload to bytes.

    Args:
        payload: Raw bytes, a UTF-8 string, or a JSON-serializable mapping.

    Returns:
        The payload as bytes.

    Raises:
        TypeError: If the payload type is not supported.
        ValueError: If a mapping cannot be encoded, e.g. it is circular.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, Mapping):
        return json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")
