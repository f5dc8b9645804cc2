"""Anonymous guest identity and per-event admin unlocks, both kept in signed cookies."""

from __future__ import annotations

import hmac
import os
import secrets

from fastapi import Request, Response

from .identifiers import random_id

SESSION_SECRET = os.getenv("SESSION_SECRET") or os.getenv("SECRET_KEY") or secrets.token_hex(32)
GUEST_COOKIE_NAME = os.getenv("GUEST_COOKIE_NAME", "memory_guest")
ADMIN_COOKIE_PREFIX = "memory_admin_"
GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 365
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in {"1", "true", "yes"}
GUEST_ID_LENGTH = 16


def _sign_payload(payload: str) -> str:
    secret = SESSION_SECRET.encode("utf-8")
    return hmac.new(secret, payload.encode("utf-8"), "sha256").hexdigest()


def _encode(payload: str) -> str:
    return f"{payload}|{_sign_payload(payload)}"


def _decode(raw: str | None) -> str | None:
    if not raw:
        return None
    payload, _, signature = raw.rpartition("|")
    if not payload or not hmac.compare_digest(_sign_payload(payload), signature):
        return None
    return payload


def current_guest(request: Request) -> str | None:
    """Return the anonymous guest id bound to this browser, or None."""
    payload = _decode(request.cookies.get(GUEST_COOKIE_NAME))
    if not payload or not payload.startswith("guest:"):
        return None
    return payload[len("guest:") :]


def ensure_guest(request: Request, response: Response) -> str:
    guest_id = current_guest(request)
    if guest_id:
        return guest_id
    guest_id = random_id(GUEST_ID_LENGTH)
    response.set_cookie(
        key=GUEST_COOKIE_NAME,
        value=_encode(f"guest:{guest_id}"),
        max_age=GUEST_COOKIE_MAX_AGE,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    return guest_id


def admin_cookie_name(event_id: str) -> str:
    return f"{ADMIN_COOKIE_PREFIX}{event_id}"


def is_admin_unlocked(request: Request, event_id: str) -> bool:
    return _decode(request.cookies.get(admin_cookie_name(event_id))) == f"admin:{event_id}"


def grant_admin(response: Response, event_id: str) -> None:
    # No max_age: the unlock ends with the browser session.
    response.set_cookie(
        key=admin_cookie_name(event_id),
        value=_encode(f"admin:{event_id}"),
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
