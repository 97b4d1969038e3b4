"""Error codes and structured error payloads.

Every failure raised by the pipeline carries one of these stable codes in
its ``code`` attribute so that callers (HTTP, CLI) can report a short
machine-readable code plus a human message.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

QUEUE_DISABLED = "queue_disabled"
NOT_ALLOWED = "not_allowed"
UNREACHABLE = "unreachable"
INVALID_SPECIFIER = "invalid_specifier"
BUNDLE_ERROR = "bundle_error"
UNRESOLVED_IMPORTS = "unresolved_imports"
BUILD_FAILED = "build_failed"
TIMEOUT = "timeout"
ARTIFACTS_MISSING = "artifacts_missing"
MAX_APPS = "max_apps"
RATE_LIMITED = "rate_limited"
DANGEROUS_PATTERN = "ses_lockdown"
INVALID_TRANSITION = "invalid_transition"
BUILD_NOT_FOUND = "build_not_found"
LISTING_NOT_FOUND = "listing_not_found"
VERSION_NOT_FOUND = "version_not_found"
FORBIDDEN = "forbidden"
INVALID_BUILD_ID = "invalid_build_id"
INVALID_SUBMISSION = "invalid_submission"
INTERNAL_ERROR = "internal_error"


@dataclass
class ErrorInfo:
    """Structured error response.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        details: Optional additional error details.
        log_path: Optional path to a log file with more information.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None
    log_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        if self.log_path is not None:
            result["log_path"] = self.log_path
        return result


def error_info(exc: BaseException, default_code: str = INTERNAL_ERROR) -> ErrorInfo:
    """Build an ErrorInfo from any pipeline exception.

    Args:
        exc: Raised exception; its ``code`` attribute is used when present.
            SQLAlchemy errors carry their own internal codes, which are not
            reported.
        default_code: Code used when the exception carries none.

    Returns:
        ErrorInfo instance.
    """
    code = None if isinstance(exc, SQLAlchemyError) else getattr(exc, "code", None)
    code = code or default_code
    details = getattr(exc, "details", None)
    log_path = getattr(exc, "log_path", None)
    return ErrorInfo(
        code=code,
        message=str(exc),
        details=details if isinstance(details, dict) else None,
        log_path=str(log_path) if log_path else None,
    )


__all__ = [
    "ARTIFACTS_MISSING",
    "BUILD_FAILED",
    "BUILD_NOT_FOUND",
    "BUNDLE_ERROR",
    "DANGEROUS_PATTERN",
    "FORBIDDEN",
    "INTERNAL_ERROR",
    "INVALID_BUILD_ID",
    "INVALID_SPECIFIER",
    "INVALID_SUBMISSION",
    "INVALID_TRANSITION",
    "LISTING_NOT_FOUND",
    "MAX_APPS",
    "NOT_ALLOWED",
    "QUEUE_DISABLED",
    "RATE_LIMITED",
    "TIMEOUT",
    "UNREACHABLE",
    "UNRESOLVED_IMPORTS",
    "VERSION_NOT_FOUND",
    "ErrorInfo",
    "error_info",
]
