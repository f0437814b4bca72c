"""Utility modules."""

from mailpilot.utils.datetime_parsing import as_utc, parse_gmail_millis
from mailpilot.utils.normalization import normalize_email, parse_email_address

__all__ = [
    # Datetime
    "as_utc",
    "parse_gmail_millis",
    # Normalization
    "normalize_email",
    "parse_email_address",
]
