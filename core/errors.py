"""
core/errors.py -- Application error taxonomy.

Every failure the service can report to a client is one of these classes.
Stores and services raise them; api/main.py registers a single exception
handler for AppError that renders the response envelope, so route handlers
never build error responses by hand.

Each class carries the HTTP status it maps to and a short machine-readable
`code` that lands in the envelope's `error` field.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for all errors recovered at the request boundary."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request."


class DuplicateError(AppError):
    status_code = 400
    code = "duplicate"
    default_message = "Username or email is already in use."


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid token."


class CredentialsError(AuthError):
    """Bad username/password on login.

    Reported as 400 (not 401) so a failed login is indistinguishable from any
    other rejected form submission. One message covers both "no such user"
    and "wrong password".
    """

    status_code = 400
    code = "bad_credentials"
    default_message = "Invalid username or password."


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "Insufficient permissions."


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class RateLimitError(AppError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests."

    def __init__(self, message: str | None = None, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConfigError(AppError):
    status_code = 500
    code = "config_error"
    default_message = "Server misconfiguration."


class InternalError(AppError):
    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred."
