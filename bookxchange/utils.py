"""
Utility functions for the BookXchange API.
"""

from datetime import datetime, timezone

from bcrypt import gensalt, hashpw

# bcrypt only reads the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


def utc_now() -> datetime:
    """
    Current UTC time as a naive datetime.

    Naive values are stored and compared throughout, since SQLite drops the
    tzinfo on round-trip.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_password(password: str) -> str:
    """
    Hash a password with bcrypt and a fresh salt.

    Returns:
        The bcrypt hash as text, salt and cost included
    """
    raw = password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    return hashpw(raw, gensalt()).decode("utf-8")
