"""
Deterministic hashing utilities.

All hashing in the kernel is deterministic and reproducible: idempotency
fingerprints, QR integrity tags and photo references are computed over a
canonical JSON form (sorted keys, no whitespace).
"""

import hashlib
import hmac
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Sorted-key, whitespace-free JSON with Decimal/UUID/datetime/Enum support."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    """Hex SHA-256 of the canonical JSON form (64 characters)."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def hash_bytes(content: bytes) -> str:
    """Hex SHA-256 of raw content (photo references)."""
    return hashlib.sha256(content).hexdigest()


def hmac_tag(secret: bytes, payload: Any) -> str:
    """Hex HMAC-SHA256 of the canonical JSON form of ``payload``."""
    return hmac.new(secret, canonicalize_json(payload).encode("utf-8"), hashlib.sha256).hexdigest()


def tags_match(expected: str, received: Any) -> bool:
    """Constant-time tag comparison; non-strings never match."""
    if not isinstance(received, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
