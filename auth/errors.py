"""
auth/errors.py -- Error taxonomy for the auth core.

Every error carries a stable machine-readable code, an HTTP status and a
client-safe message. Route handlers and dependencies raise these; api/main.py
maps them onto the shared ErrorResponse envelope.

Unauthenticated deliberately coalesces missing, malformed, expired and revoked
tokens as well as deactivated accounts. Do not split it into finer codes: the
single outcome keeps clients from probing which check failed.

Persistence failures are not wrapped here; SQLAlchemy's own SQLAlchemyError
propagates and api/main.py turns it into a generic 500.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Render as the ErrorResponse envelope body."""
        return {"error": {"code": self.code, "message": self.message, "detail": None}}


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    status_code = 401
    message = "Invalid email or password."


class UserNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "User not found."


class SessionNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Session not found."


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    status_code = 403
    message = "Please verify your email before logging in."


class Unauthenticated(AuthError):
    code = "unauthorized"
    status_code = 401
    message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "You do not have access to this resource."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "A user with that email already exists."


class InvalidOneTimeToken(AuthError):
    code = "invalid_token"
    status_code = 400
    message = "Invalid or expired token."


class TokenError(ValueError):
    """Raised by verify_access_token(). Never reaches a client directly."""


class TokenMalformed(TokenError):
    pass


class TokenExpired(TokenError):
    pass
