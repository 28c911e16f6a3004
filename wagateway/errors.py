from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for errors surfaced to HTTP callers."""

    status_code = 500
    code = "gateway_error"
    message = "Gateway error"

    def __init__(self, session: Optional[str] = None, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.message)
        self.session = session
        self.detail = detail or self.message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.detail}


class AlreadyExists(GatewayError):
    """Raised when a session with the same name is already registered."""

    status_code = 400
    code = "already_exists"
    message = "Session already exists"


class NotFound(GatewayError):
    """Raised when the session name is not registered."""

    status_code = 404
    code = "not_found"
    message = "Session not found"


class InitializationError(GatewayError):
    """Raised when the engine client could not be brought up."""

    code = "initialization_error"
    message = "Failed to create session"


class AuthenticationFailed(GatewayError):
    code = "auth_failed"
    message = "Authentication failed"


class RenderError(GatewayError):
    code = "render_error"
    message = "Failed to render QR code"


class DeliveryError(GatewayError):
    code = "delivery_error"
    message = "Failed to send message"


class InvalidRecipient(GatewayError):
    status_code = 400
    code = "invalid_number"
    message = "Recipient number is invalid"


class NotReady(GatewayError):
    """Raised when a send is attempted before the session is connected."""

    status_code = 409
    code = "not_ready"
    message = "Session is not connected"


__all__ = [
    "AlreadyExists",
    "AuthenticationFailed",
    "DeliveryError",
    "GatewayError",
    "InitializationError",
    "InvalidRecipient",
    "NotFound",
    "NotReady",
    "RenderError",
]
