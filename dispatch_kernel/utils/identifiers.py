"""Human-facing identifiers and idempotency key validation."""

import re
import secrets
import string
from datetime import datetime

_ALPHABET = string.ascii_uppercase + string.digits
_IDEMPOTENCY_KEY_RE = re.compile(r"[A-Za-z0-9-]{16,128}")


def _suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _stamp(now: datetime) -> str:
    return str(int(now.timestamp() * 1000))[-6:]


def generate_order_number(now: datetime) -> str:
    """ORD-<last 6 digits of epoch ms>-<4 random chars>."""
    return f"ORD-{_stamp(now)}-{_suffix(4)}"


def generate_tracking_number(now: datetime) -> str:
    """TRK-<last 6 digits of epoch ms>-<6 random chars>."""
    return f"TRK-{_stamp(now)}-{_suffix(6)}"


def is_valid_idempotency_key(key: object) -> bool:
    """16-128 characters of letters, digits and hyphens (UUIDs qualify)."""
    return isinstance(key, str) and bool(_IDEMPOTENCY_KEY_RE.fullmatch(key))


def generate_idempotency_key() -> str:
    return secrets.token_hex(16)
