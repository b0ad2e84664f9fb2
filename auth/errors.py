"""
auth/errors.py -- Error taxonomy for the session/authentication core.

Every failure that crosses the core's boundary is one of these classes. Each
carries the HTTP status and a stable machine-readable code so api/main.py can
render the failure envelope without inspecting exception types one by one.

Authentication failures are low-information: the messages do
not reveal whether an account exists, or whether a token was forged,
revoked, or simply expired.

Layer rule: stdlib only. api/ imports from here, never the reverse.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    """Base class for auth-core exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None, *, errors: list | None = None) -> None:
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationError(AuthServiceError):
    """Malformed input (400). Never logged as a server fault."""

    status_code = 400
    error_code = "validation_error"
    default_message = "Validation error"


class ConflictError(AuthServiceError):
    """Duplicate identity key: phone or email already registered (409)."""

    status_code = 409
    error_code = "conflict"
    default_message = "User with this email or phone already exists"


class InvalidCredentials(AuthServiceError):
    """Unknown email or wrong password -- same shape for both (401)."""

    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class InvalidToken(AuthServiceError):
    """Refresh token forged, expired, or revoked -- indistinguishable (401)."""

    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid or expired refresh token"


class InvalidOrExpiredCode(AuthServiceError):
    """One-time code absent, mismatched, expired, or already used (400)."""

    status_code = 400
    error_code = "invalid_code"
    default_message = "Invalid or expired OTP"


class UnauthorizedError(AuthServiceError):
    """Missing or invalid bearer access token at the Access Guard (401)."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "Invalid or expired token."


class NotFoundError(AuthServiceError):
    """Requested resource does not exist (404)."""

    status_code = 404
    error_code = "not_found"
    default_message = "User not found"


class InternalError(AuthServiceError):
    """Storage or codec failure (500). Details stay in the server log."""

    status_code = 500
    error_code = "internal_error"
    default_message = "An unexpected error occurred."
