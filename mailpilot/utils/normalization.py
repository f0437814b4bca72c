"""Normalization helpers for addresses and header values."""

import re
from typing import Optional

_ANGLE_ADDRESS = re.compile(r"<([^<>\s]+@[^<>\s]+)>")
_BARE_ADDRESS = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower()


def parse_email_address(header_value: Optional[str]) -> Optional[str]:
    """
    Pull the bare address out of a From/To header value.

    ``"Jane Doe <Jane@Example.com>"`` -> ``"jane@example.com"``. Returns None
    when the value holds no address.
    """
    if not header_value:
        return None
    match = _ANGLE_ADDRESS.search(header_value)
    if match:
        return normalize_email(match.group(1))
    match = _BARE_ADDRESS.search(header_value)
    if match:
        return normalize_email(match.group(0))
    return None
