"""Phone number normalization for revealed seller contacts."""

import re

_SEPARATORS = re.compile(r"[\s\-.()]+")


def parse_phone_number(raw_phone: str) -> str:
    """Normalize a phone number taken from a tel: link or visible text.

    Handles formats like ``tel:+48123456789``, ``tel:123456789`` and
    ``+48 123 456 789``. Bare nine-digit numbers are Polish and get the
    ``+48`` prefix.

    Args:
        raw_phone: Raw phone string from an href or element text.

    Returns:
        Normalized phone number.
    """
    phone = re.sub(r"^tel:", "", raw_phone.strip(), flags=re.IGNORECASE)
    phone = _SEPARATORS.sub("", phone)

    if phone.startswith("00"):
        phone = "+" + phone[2:]

    if re.fullmatch(r"\d{9}", phone):
        phone = "+48" + phone
    elif re.fullmatch(r"48\d{9}", phone):
        phone = "+" + phone

    return phone
