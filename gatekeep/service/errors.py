from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - store_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    The message is for logs only; the API renders every subclass with the
    same ``unauthorized`` text.
    """
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A bearer token was rejected."""


class MalformedTokenError(TokenError):
    """Token could not be decoded or lacks a required claim."""


class InvalidSignatureError(TokenError):
    """Token signature does not match the configured public key."""


class TokenExpiredError(TokenError):
    """Token ``exp`` is at or before the current time."""


class TokenRevokedError(TokenError):
    """Token jti is on the block list."""


class WrongTokenTypeError(TokenError):
    """Token is valid but of the wrong kind for this use (access vs refresh)."""


class MissingCredentialsError(AuthenticationError):
    """No bearer credentials were presented."""


class PrincipalGoneError(AuthenticationError):
    """Token is valid but its subject no longer exists."""


class PrincipalNotFoundError(AuthenticationError):
    """Token issuance was requested for an unknown subject."""


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match an active account."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "MalformedTokenError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "TokenRevokedError",
    "WrongTokenTypeError",
    "MissingCredentialsError",
    "PrincipalGoneError",
    "PrincipalNotFoundError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
]
