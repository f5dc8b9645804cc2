"""Shared-secret gate in front of an event's configuration.

One secret per event, stored only as a SHA-256 digest. An unlock lasts for
the rest of the browser session: there is no expiry and no rate limiting.
"""

from __future__ import annotations

import hmac

from .identifiers import sha256_hex


def verify_admin_secret(secret: str | None, stored_digest: str | None) -> bool:
    if not secret or not stored_digest:
        return False
    return hmac.compare_digest(sha256_hex(secret).encode("ascii"), stored_digest.encode("ascii"))


class AdminGate:
    def __init__(self, stored_digest: str | None) -> None:
        self._stored_digest = stored_digest
        self.unlocked = False

    def unlock(self, secret: str | None) -> bool:
        if not verify_admin_secret(secret, self._stored_digest):
            return False
        self.unlocked = True
        return True
