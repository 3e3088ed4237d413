from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.errors = list(errors) if errors else []


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "Validation failed"


class InvalidIdError(ValidationError):
    default_message = "Invalid ID format"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Unauthorized"


class MissingCredentialError(AuthenticationError):
    default_message = "Validation token is missing"


class MalformedCredentialError(AuthenticationError):
    """Authorization header present but not a ``Bearer <token>`` pair."""
    default_message = "Invalid authentication type"


class InvalidSignatureError(AuthenticationError):
    default_message = "Invalid token"


class TokenExpiredError(AuthenticationError):
    default_message = "Session expired. Please log in"


class InvalidCredentialsError(AuthenticationError):
    default_message = "Invalid credentials"


class IdentityMismatchError(AuthenticationError):
    """Principal tried to act on a record that is not its own."""
    default_message = "You are not authorized to update that user"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "You don't have permissions to make that request"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "User not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Email is already in use"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "Internal Server Error"


class StoreUnavailableError(ServerError):
    """User store timed out or failed."""


class CacheUnavailableError(ServerError):
    """Cache backend timed out or failed during a lookup."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidIdError",
    "AuthenticationError",
    "MissingCredentialError",
    "MalformedCredentialError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "IdentityMismatchError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StoreUnavailableError",
    "CacheUnavailableError",
]
