"""
Check-in code generation and verification.

The code is derived from the booking id alone (HMAC-SHA256 keyed by
CHECK_IN_SECRET, base32, first 8 characters) so it can be re-rendered for
the client at any time without being stored.
"""

import base64
import hashlib
import hmac
import re
from typing import Optional, Union

from pydantic import SecretStr

from ..core.config import settings
from ..core.enums import BookingStatus
from ..core.exceptions import AlreadyCheckedInException, InvalidCheckInCodeException
from ..models.booking import Booking

CODE_LENGTH = 8
_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")

_CHECKED_IN_STATUSES = frozenset({BookingStatus.IN_PROGRESS.value, BookingStatus.COMPLETED.value})


def _normalize(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CheckInVerifier:
    def __init__(self, secret: Union[SecretStr, str, None] = None):
        raw = secret if secret is not None else settings.check_in_secret
        value = raw.get_secret_value() if isinstance(raw, SecretStr) else raw
        if not value:
            raise ValueError("Check-in secret must not be empty")
        self._key = value.encode("utf-8")

    def generate_code(self, booking_id: str) -> str:
        digest = hmac.new(self._key, booking_id.encode("utf-8"), hashlib.sha256).digest()
        return base64.b32encode(digest).decode("ascii").upper()[:CODE_LENGTH]

    @staticmethod
    def is_well_formed(code: Optional[str]) -> bool:
        """Format check only; no booking lookup."""
        return bool(_CODE_PATTERN.match(_normalize(code)))

    def verify(self, submitted_code: Optional[str], booking: Booking) -> None:
        """
        Check the submitted code against the booking.

        Raises AlreadyCheckedInException before looking at the code, so a
        repeated scan never reaches the remainder capture.
        """
        if booking.status in _CHECKED_IN_STATUSES or booking.checked_in_at is not None:
            raise AlreadyCheckedInException(booking.id)

        code = _normalize(submitted_code)
        if not _CODE_PATTERN.match(code):
            raise InvalidCheckInCodeException(booking.id)
        if not hmac.compare_digest(code, self.generate_code(booking.id)):
            raise InvalidCheckInCodeException(booking.id)
