"""User-facing failures raised by the domain helpers.

Routes translate these into HTTP status codes; the live play session turns
them into ``error`` messages. Neither kind changes any stored state.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Required user input is missing or malformed."""


class AuthorizationError(PermissionError):
    """The caller lacks the identity or secret the action requires."""
