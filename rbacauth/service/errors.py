from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the API envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (400)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or role name.

    Reported as a 400 so duplicate registrations look like any other
    rejected form submission.
    """
    status_code = 400
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DependencyFailure(ServerError):
    """An outbound dependency (mail relay, store) failed mid-operation."""
    pass


# Credential and account-state failures


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, remaining_attempts: int, message: str = "Invalid credentials") -> None:
        super().__init__(message, detail={"remaining_attempts": remaining_attempts})
        self.remaining_attempts = remaining_attempts


class SocialLoginRequiredError(AuthenticationError):
    def __init__(
        self,
        message: str = "This account uses social login. Please use Google to sign in.",
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, status_code=status_code)


class AccountInactiveError(AuthenticationError):
    def __init__(self, message: str = "Account is inactive. Please contact administrator.") -> None:
        super().__init__(message)


class EmailUnverifiedError(AuthenticationError):
    def __init__(self, user_id: str) -> None:
        super().__init__(
            "Please verify your email before logging in. Check your email for the OTP code.",
            detail={"requires_verification": True, "user_id": user_id},
        )
        self.user_id = user_id


class IPBannedError(ForbiddenError):
    def __init__(
        self,
        message: str = (
            "Your IP address has been temporarily banned due to suspicious activity. "
            "Please try again later."
        ),
    ) -> None:
        super().__init__(message)


class AccountLockedError(ForbiddenError):
    def __init__(self) -> None:
        super().__init__(
            "Too many failed login attempts. Your IP has been temporarily banned. "
            "Please try again later."
        )


class BotDetectedError(ForbiddenError):
    def __init__(self, reasons: Optional[list] = None, *, expose_reasons: bool = False) -> None:
        detail = {"reasons": reasons} if expose_reasons and reasons else None
        super().__init__("Suspicious activity detected. Access denied.", detail=detail)
        self.reasons = reasons or []


class PermissionDeniedError(ForbiddenError):
    def __init__(self, permission: str, resource: str = "resource") -> None:
        super().__init__(
            f"Permission denied: {permission} required to access {resource}",
            detail={"permission": permission, "resource": resource},
        )
        self.permission = permission
        self.resource = resource


# Verification challenge failures (OTP and reset token)


class AlreadyVerifiedError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Email already verified")


class OTPMissingError(ValidationError):
    def __init__(self) -> None:
        super().__init__("OTP not found. Please request a new one.")


class OTPMismatchError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Invalid OTP code")


class ExpiredTokenError(ValidationError):
    def __init__(self, message: str = "OTP has expired. Please request a new one.") -> None:
        super().__init__(message)


class InvalidResetTokenError(ExpiredTokenError):
    def __init__(self) -> None:
        super().__init__("Invalid or expired reset token")


class CurrentSessionNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("Current session not found")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DependencyFailure",
    "InvalidCredentialsError",
    "SocialLoginRequiredError",
    "AccountInactiveError",
    "EmailUnverifiedError",
    "IPBannedError",
    "AccountLockedError",
    "BotDetectedError",
    "PermissionDeniedError",
    "AlreadyVerifiedError",
    "OTPMissingError",
    "OTPMismatchError",
    "ExpiredTokenError",
    "InvalidResetTokenError",
    "CurrentSessionNotFoundError",
]
