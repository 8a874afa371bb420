from __future__ import annotations

from typing import Any, Optional

from groundwave.utils.error_codes import ErrorCode, ERROR_MESSAGES


def _normalize_error_code(value: ErrorCode | str | None) -> ErrorCode:
    if value is None:
        return ErrorCode.E010
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value))
    except ValueError:
        return ErrorCode.E010


class GroundwaveException(Exception):
    """Base exception for request-level failures.

    Rendered as {"error": message, "code": code} by the global exception handler.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.E010,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ):
        normalized = _normalize_error_code(code)
        if message is None:
            message = ERROR_MESSAGES.get(normalized, ERROR_MESSAGES[ErrorCode.E010])

        self.message = message
        self.code = normalized.value
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class BadRequestException(GroundwaveException):
    def __init__(self, message: str | None = None, *, code: ErrorCode = ErrorCode.E009, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=code, details=details, status_code=400)


class UnauthorizedException(GroundwaveException):
    def __init__(self, message: str | None = None, *, code: ErrorCode = ErrorCode.E006, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "not authenticated", code=code, details=details, status_code=401)


class ForbiddenException(GroundwaveException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "forbidden", code=ErrorCode.E006, details=details, status_code=403)


class NotFoundException(GroundwaveException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "not found", code=ErrorCode.E001, details=details, status_code=404)


class ConflictException(GroundwaveException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E008, details=details, status_code=409)


class PayloadTooLargeException(GroundwaveException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E007, details=details, status_code=413)


class TooManyRequestsException(GroundwaveException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "too many requests", code=ErrorCode.E009, details=details, status_code=429)


class SetupAlreadyCompleted(GroundwaveException):
    """Bootstrap lost the race: a user already exists (or the bootstrap claim is taken)."""

    def __init__(self, message: str | None = None):
        super().__init__(message, code=ErrorCode.E003, status_code=400)


class InviteInvalidOrUsed(GroundwaveException):
    """The invite row was consumed (or revoked) before the setup transaction committed."""

    def __init__(self, message: str | None = None):
        super().__init__(message, code=ErrorCode.E004, status_code=400)


class PasskeyVerificationError(GroundwaveException):
    """Assertion or attestation could not be verified."""

    def __init__(self, message: str | None = None, *, status_code: int = 401, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E005, details=details, status_code=status_code)


class RedirectRequired(GroundwaveException):
    """Raised from dependencies guarding HTML pages; rendered as a 303 to ``location``."""

    def __init__(self, location: str, *, reason: str = ""):
        super().__init__("redirect", code=ErrorCode.E006, details={"reason": reason} if reason else None, status_code=303)
        self.location = location
