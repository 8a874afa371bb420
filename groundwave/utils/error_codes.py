from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes carried next to the human-readable error string."""

    E001 = "E001"  # Not found
    E002 = "E002"  # Proof of work: challenge missing/expired/invalid
    E003 = "E003"  # Setup: already completed
    E004 = "E004"  # Setup: invite invalid or used
    E005 = "E005"  # Auth: passkey verification failed
    E006 = "E006"  # Auth: insufficient permissions
    E007 = "E007"  # Request: payload too large
    E008 = "E008"  # Conflict: state conflict
    E009 = "E009"  # Validation: invalid input
    E010 = "E010"  # Internal: internal error


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.E001: "not found",
    ErrorCode.E002: "invalid proof",
    ErrorCode.E003: "setup already completed",
    ErrorCode.E004: "invite is no longer valid",
    ErrorCode.E005: "failed to verify passkey",
    ErrorCode.E006: "insufficient permissions",
    ErrorCode.E007: "request payload too large",
    ErrorCode.E008: "state conflict",
    ErrorCode.E009: "invalid request body",
    ErrorCode.E010: "internal server error",
}
