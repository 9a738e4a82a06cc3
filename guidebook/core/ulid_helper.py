"""ULID and booking-number generation helpers."""

import secrets
import string
import time
from typing import Optional

import ulid

_BOOKING_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def parse_ulid(ulid_str: str) -> Optional[ulid.ULID]:
    """Parse and validate a ULID string."""
    try:
        return ulid.ULID.from_str(ulid_str)
    except (ValueError, TypeError, AttributeError):
        return None


def is_valid_ulid(ulid_str: str) -> bool:
    return parse_ulid(ulid_str) is not None


def generate_booking_number(now_ms: Optional[int] = None) -> str:
    """Human-readable booking reference, e.g. ``BK-1718035200000-7QX2M9KAD``."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BOOKING_NUMBER_ALPHABET) for _ in range(9))
    return f"BK-{stamp}-{suffix}"
