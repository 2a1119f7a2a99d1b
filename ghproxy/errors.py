"""Exception hierarchy for ghproxy.

Every caller-facing failure is a ``GatewayError`` carrying the HTTP
status code and the plain-text message rendered back to the caller.
``ConfigLoadFailed`` is the exception: it is logged and absorbed by the
config store and never reaches a request.

This module is a base-layer module: it must NOT import from any
other ``ghproxy`` submodule.
"""

from __future__ import annotations

from enum import Enum


class GatewayError(Exception):
    """Base exception for all ghproxy errors."""

    status_code = 500
    default_message = "server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InputRejected(GatewayError):
    """Malformed candidate, missing scheme, or no recognised upstream shape."""

    status_code = 403
    default_message = "Invalid input."


class DenyReason(str, Enum):
    """Which access list produced a denial."""

    NOT_ALLOWED = "not_allowed"
    BLOCKED = "blocked"


_DENY_MESSAGES = {
    DenyReason.NOT_ALLOWED: "Not in allow list, access restricted.",
    DenyReason.BLOCKED: "Blocked by deny list.",
}


class AccessDenied(GatewayError):
    """The identity was refused by the allow or deny list."""

    status_code = 403

    def __init__(self, reason: DenyReason, identity: str = "") -> None:
        self.reason = reason
        self.identity = identity
        super().__init__(_DENY_MESSAGES[reason])


class UpstreamUnreachable(GatewayError):
    """Connection, timeout or transport failure talking to the upstream."""

    status_code = 500

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"server error {detail}".rstrip())


class ResponseTooLarge(GatewayError):
    """Upstream declared a Content-Length above the size ceiling."""

    status_code = 413
    default_message = "File too large."


class ConfigLoadFailed(GatewayError):
    """Access list file could not be read or decoded."""
