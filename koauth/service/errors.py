from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds raised by the credential core."""

    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED_CREDENTIAL = "expired_credential"
    CODE_ALREADY_USED = "code_already_used"
    CODE_EXPIRED = "code_expired"
    CLIENT_MISMATCH = "client_mismatch"
    CLIENT_INACTIVE = "client_inactive"
    INVALID_REDIRECT_URI = "invalid_redirect_uri"
    INVALID_SCOPE = "invalid_scope"
    PKCE_MISMATCH = "pkce_mismatch"
    UNAUTHORIZED_GRANT = "unauthorized_grant"
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
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


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class Unauthorized(ServiceError):
    """The single outward signal for any rejected credential (401).

    Carries no hint of why the credential was rejected.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message)


class CredentialError(ServiceError):
    """A failure with a known kind from the credential taxonomy.

    Subclasses with ``normalized = True`` describe rejected credentials and
    are collapsed into :class:`Unauthorized` before leaving the core.
    """

    kind: ErrorKind = ErrorKind.INVALID_CREDENTIAL
    normalized: bool = True
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(message or self.kind.value.replace("_", " "), detail=detail)


class InvalidCredential(CredentialError):
    kind = ErrorKind.INVALID_CREDENTIAL


class ExpiredCredential(CredentialError):
    kind = ErrorKind.EXPIRED_CREDENTIAL


class CodeAlreadyUsed(CredentialError):
    kind = ErrorKind.CODE_ALREADY_USED


class CodeExpired(CredentialError):
    kind = ErrorKind.CODE_EXPIRED


class ClientMismatch(CredentialError):
    kind = ErrorKind.CLIENT_MISMATCH


class PkceMismatch(CredentialError):
    kind = ErrorKind.PKCE_MISMATCH


class ClientInactive(CredentialError):
    """Client exists but has been deactivated (400)."""
    kind = ErrorKind.CLIENT_INACTIVE
    normalized = False
    status_code = 400
    error_code = "client_inactive"


class InvalidRedirectUri(CredentialError):
    """Redirect URI is not one of the client's registered URIs (400)."""
    kind = ErrorKind.INVALID_REDIRECT_URI
    normalized = False
    status_code = 400
    error_code = "invalid_redirect_uri"


class InvalidScope(CredentialError):
    kind = ErrorKind.INVALID_SCOPE
    normalized = False
    status_code = 400
    error_code = "invalid_scope"


class UnauthorizedGrant(CredentialError):
    """Client is not registered for the requested grant type (400)."""
    kind = ErrorKind.UNAUTHORIZED_GRANT
    normalized = False
    status_code = 400
    error_code = "unauthorized_client"


class NotFoundError(CredentialError):
    """Requested client or user not found (404)."""
    kind = ErrorKind.NOT_FOUND
    normalized = False
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "ConflictError",
    "Unauthorized",
    "CredentialError",
    "InvalidCredential",
    "ExpiredCredential",
    "CodeAlreadyUsed",
    "CodeExpired",
    "ClientMismatch",
    "PkceMismatch",
    "ClientInactive",
    "InvalidRedirectUri",
    "InvalidScope",
    "UnauthorizedGrant",
    "NotFoundError",
]
