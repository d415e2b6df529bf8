"""Field normalisation shared by the auth engine and the request schemas."""

from __future__ import annotations

import re
import unicodedata

NICKNAME_MIN_LENGTH = 3
NICKNAME_MAX_LENGTH = 32
NAME_MAX_LENGTH = 100

_NICKNAME_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


_INVISIBLE_CHARS = frozenset(
    "\u200b\u200c\u200d\ufeff"
    + "".join(chr(c) for c in range(0x202A, 0x202F))
    + "".join(chr(c) for c in range(0x2066, 0x206A))
)


def normalize_unicode(value: str) -> str:
    """NFKC-normalise after dropping zero-width and bidi override characters."""
    cleaned = "".join(c for c in value if c not in _INVISIBLE_CHARS)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Return the lower-cased address or raise ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # fold compatibility forms before case so NFKC cannot reintroduce capitals
    normalized = normalize_unicode(value.strip()).lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def is_valid_nickname(value: str) -> bool:
    return (
        NICKNAME_MIN_LENGTH <= len(value) <= NICKNAME_MAX_LENGTH
        and bool(_NICKNAME_PATTERN.match(value))
    )
