"""
Consistent error handling for the marketplace credential core.

Every failure that leaves the core is an AppError subclass carrying a stable
code, a human-readable message and the HTTP status a presentation-layer caller
should answer with. Token values are NEVER placed in messages or details.

Standard HTTP status codes:
- 400: Bad Request (authorization code rejected by the platform)
- 401: Unauthorized (refresh token rejected, re-authorization required)
- 404: Not Found (no credential for the shop)
- 409: Conflict (concurrent credential update)
- 500: Internal Server Error (configuration, signing, decryption)
- 502: Bad Gateway (platform returned an unusable response)
- 503: Service Unavailable (platform token endpoint unreachable)
"""

from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ConfigurationError(AppError):
    """Missing or malformed configuration at startup (fatal)."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        details = {"missing": missing} if missing else None
        super().__init__(
            code="CONFIGURATION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.missing = missing or []


class SignatureError(AppError):
    """Malformed input to the signature engine (programming error, never retried)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="SIGNATURE_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class DecryptionError(AppError):
    """
    Stored ciphertext could not be decrypted.

    Re-authorization does not fix this: it indicates a rotated key or corrupted
    data, so it is kept distinct from refresh failures.
    """

    def __init__(
        self,
        message: str = "Stored credential could not be decrypted",
        credential_id: Optional[int] = None,
    ):
        details = {"credential_id": credential_id} if credential_id is not None else None
        super().__init__(
            code="CREDENTIAL_DECRYPTION_FAILED",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.credential_id = credential_id


class CredentialNotFoundError(AppError):
    """No credential exists for the requested shop or account (404)."""

    def __init__(self, platform: str, identifier: Optional[str] = None):
        message = f"No {platform} credential found"
        if identifier:
            message = f"No {platform} credential found for '{identifier}'"
        super().__init__(
            code="CREDENTIAL_NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"platform": platform},
        )


class RefreshTransientError(AppError):
    """Token endpoint unreachable, timed out or answered with a retryable failure (503)."""

    def __init__(
        self,
        message: str = "Token refresh temporarily unavailable",
        platform: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        details: dict[str, Any] = {}
        if platform:
            details["platform"] = platform
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(
            code="TOKEN_REFRESH_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )
        self.platform = platform
        self.upstream_status = upstream_status


class ReauthorizationRequiredError(AppError):
    """
    The credential can no longer be refreshed (401).

    Callers must surface this to the end user and start the platform's
    authorization flow again. Never retried.
    """

    def __init__(
        self,
        message: str = "Marketplace re-authorization required",
        platform: Optional[str] = None,
        shop_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        if platform:
            details["platform"] = platform
        if shop_id:
            details["shop_id"] = shop_id
        if reason:
            details["reason"] = reason
        super().__init__(
            code="REAUTHORIZATION_REQUIRED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )
        self.platform = platform
        self.shop_id = shop_id
        self.reason = reason


class RefreshRejectedError(ReauthorizationRequiredError):
    """The platform explicitly rejected the refresh token."""

    def __init__(
        self,
        message: str = "Refresh token rejected by platform",
        platform: Optional[str] = None,
        shop_id: Optional[str] = None,
        platform_error: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            platform=platform,
            shop_id=shop_id,
            reason="refresh_token_rejected",
        )
        if platform_error:
            self.details["platform_error"] = platform_error
        self.platform_error = platform_error


class StaleCredentialError(AppError):
    """A token update lost an optimistic-concurrency race (409)."""

    def __init__(self, credential_id: int, expected_version: int):
        super().__init__(
            code="CREDENTIAL_CONFLICT",
            message=f"Credential {credential_id} was modified concurrently",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "credential_id": credential_id,
                "expected_version": expected_version,
            },
        )
        self.credential_id = credential_id
        self.expected_version = expected_version


class AuthorizationExchangeError(AppError):
    """The platform refused or garbled an authorization-code exchange."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
    ):
        super().__init__(
            code="AUTHORIZATION_FAILED",
            message=message,
            status_code=status_code,
            details={"platform": platform} if platform else None,
        )
        self.platform = platform
