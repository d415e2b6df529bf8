"""One-time numeric codes for email verification and login."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    """Return a zero-padded decimal code drawn from the OS CSPRNG."""
    return str(secrets.randbelow(10**length)).zfill(length)


def is_well_formed_code(value: object, length: int = CODE_LENGTH) -> bool:
    return isinstance(value, str) and len(value) == length and value.isascii() and value.isdigit()


def code_expiry(now: datetime, ttl_minutes: int) -> datetime:
    return now.replace(microsecond=0) + timedelta(minutes=ttl_minutes)
