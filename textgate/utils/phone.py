"""
Phone number normalization - E.164 format using the phonenumbers library.
Handles parentheses, dashes, dots, spaces and a missing country code.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone_e164(phone: str, default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - (555) 123-4567 → +15551234567
    - 555.123.4567   → +15551234567
    - +15551234567   → +15551234567
    - 1-555-123-4567 → +15551234567

    Returns None if the number cannot be parsed or is not a possible number.
    """
    if not phone or not phone.strip():
        return None

    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None

    # Accept "possible" NANP numbers, not only officially assigned ranges,
    # so 555 test exchanges normalize the same way as live numbers.
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def nanp_area_code(phone: str) -> Optional[str]:
    """Return the 3-digit NANP area code of a +1 number, or None."""
    digits = "".join(c for c in phone or "" if c.isdigit())
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits[:3]


def mask_phone(phone: Optional[str]) -> str:
    """Mask phone number for logging - show first 6 characters only."""
    if not phone:
        return "unknown"
    if len(phone) > 6:
        return phone[:6] + "***"
    return phone
