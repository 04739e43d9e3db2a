"""Client-facing error taxonomy.

Every error carries a stable machine-readable ``kind`` and a human-readable
message. Boundaries (HTTP exception handlers, the websocket event loop)
convert them into an error envelope with ``to_payload``.

``InternalError`` is the only member whose message is never shown to clients
verbatim; boundaries log it with full context and answer with a generic text.
"""
from __future__ import annotations

from typing import Any


class ChatError(Exception):
    """Base class for all expected, client-facing failures."""

    kind: str = "internal_error"
    status_code: int = 500
    default_message: str = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "kind": self.kind, "message": self.message}


class DuplicateIdentityError(ChatError):
    kind = "duplicate_identity"
    status_code = 409
    default_message = "Identity already exists"


class InvalidCredentialsError(ChatError):
    kind = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"

    def __init__(self) -> None:
        # Fixed text so a missing account and a wrong password look identical.
        super().__init__(self.default_message)


class MissingCredentialsError(ChatError):
    kind = "missing_credentials"
    status_code = 400
    default_message = "No credentials provided"


class AuthFailureError(ChatError):
    kind = "auth_failure"
    status_code = 401
    default_message = "Authentication required"


class ExpiredTokenError(ChatError):
    kind = "expired_token"
    status_code = 401
    default_message = "Token has expired"


class InvalidSignatureError(ChatError):
    kind = "invalid_signature"
    status_code = 401
    default_message = "Token signature is invalid"


class MalformedTokenError(ChatError):
    kind = "malformed_token"
    status_code = 401
    default_message = "Token is malformed"


class TokenReusedError(ChatError):
    kind = "token_reused"
    status_code = 401
    default_message = "Refresh token has already been used"


class NotAMemberError(ChatError):
    kind = "not_a_member"
    status_code = 403
    default_message = "You are not a participant of this conversation"


class NotFoundError(ChatError):
    kind = "not_found"
    status_code = 404
    default_message = "Resource not found"


class InvalidRequestError(ChatError):
    kind = "invalid_request"
    status_code = 422
    default_message = "Invalid request"


class RateLimitExceededError(ChatError):
    """Raised at the boundary when the rate limiter denies a request.

    Attributes:
        retry_after: Seconds until a new slot becomes available.
        limit: The maximum allowed requests per window.
        window_seconds: The duration of the rate limit window.
    """

    kind = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, *, retry_after: float, limit: int, window_seconds: float) -> None:
        self.retry_after = max(0.0, float(retry_after))
        self.limit = max(0, int(limit))
        self.window_seconds = max(0.0, float(window_seconds))
        minutes = self.window_seconds / 60
        window_desc = f"{minutes:g} minute" if minutes >= 1 else f"{self.window_seconds:g} seconds"
        super().__init__(
            f"You exceeded the request limit. Allowed {self.limit} requests per {window_desc}."
        )

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "retry_after": self.retry_after,
                "limit": self.limit,
                "window_ms": int(self.window_seconds * 1000),
            }
        )
        return payload


class InternalError(ChatError):
    kind = "internal_error"
    status_code = 500
    default_message = "Something went wrong"

    def public_payload(self, expose_details: bool = False) -> dict[str, Any]:
        """Envelope for clients; the real message only in diagnostic mode."""
        payload = {"success": False, "kind": self.kind, "message": self.default_message}
        if expose_details:
            payload["detail"] = self.message
        return payload


__all__ = [
    "AuthFailureError",
    "ChatError",
    "DuplicateIdentityError",
    "ExpiredTokenError",
    "InternalError",
    "InvalidCredentialsError",
    "InvalidRequestError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "MissingCredentialsError",
    "NotAMemberError",
    "NotFoundError",
    "RateLimitExceededError",
    "TokenReusedError",
]
