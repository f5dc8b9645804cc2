"""Short random identifiers and one-way digests."""

from __future__ import annotations

import hashlib
import secrets
import string

ID_ALPHABET = string.digits + string.ascii_lowercase


def random_id(length: int = 6) -> str:
    """Return a random base36 string drawn from the OS CSPRNG."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
