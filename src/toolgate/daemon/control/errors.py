"""Typed errors returned across the core boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .types import AdmissionReason, AdmissionResult


class ErrorCode(StrEnum):
    ADMISSION_DENIED = "admission_denied"
    SESSION_EXPIRED = "session_expired"
    SESSION_OWNER_MISMATCH = "session_owner_mismatch"
    VALIDATION_FAILED = "validation_failed"
    INTERNAL_ERROR = "internal_error"
    UNKNOWN_TOOL = "unknown_tool"


_HTTP_STATUS = {
    ErrorCode.ADMISSION_DENIED: 429,
    ErrorCode.SESSION_EXPIRED: 409,
    ErrorCode.SESSION_OWNER_MISMATCH: 409,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.UNKNOWN_TOOL: 404,
    ErrorCode.INTERNAL_ERROR: 503,
}

_ADMISSION_MESSAGES = {
    AdmissionReason.BURST_LIMIT_EXCEEDED: "Too many requests. Please slow down.",
    AdmissionReason.SUSTAINED_LIMIT_EXCEEDED: "Rate limit exceeded for your account.",
    AdmissionReason.TOKEN_LIMIT_EXCEEDED: "Rate limit exceeded for this API token.",
    AdmissionReason.GLOBAL_LIMIT_EXCEEDED: "Service is temporarily overloaded. Please try again later.",
    AdmissionReason.BULK_NOT_ALLOWED_FOR_PLAN: "Bulk operations are not available on your plan.",
    AdmissionReason.BULK_ITEM_LIMIT_EXCEEDED: "Too many items in one bulk call for your plan.",
    AdmissionReason.STORE_UNAVAILABLE: "Quota service is unavailable.",
    AdmissionReason.INVALID_REQUEST: "The request cannot be admitted as sent.",
}

# Owner mismatch shares this text so a non-owner cannot detect live tokens.
SESSION_GONE_MESSAGE = "Session expired or invalid. Please run prepare stage again."


class EffectError(Exception):
    """Raised by an effect executor to report a typed failure."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.INTERNAL_ERROR):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ToolError:
    code: ErrorCode
    message: str
    reason: str | None = None
    retry_after_seconds: int | None = None
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.code, 500)

    @property
    def public_code(self) -> str:
        """Code shown to callers; an owner mismatch is indistinguishable from expiry."""
        if self.code == ErrorCode.SESSION_OWNER_MISMATCH:
            return str(ErrorCode.SESSION_EXPIRED)
        return str(self.code)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.public_code, "message": self.message}
        if self.reason:
            out["reason"] = self.reason
        if self.retry_after_seconds is not None:
            out["retry_after"] = int(self.retry_after_seconds)
        if self.suggestion:
            out["suggestion"] = self.suggestion
        if self.details:
            out["details"] = self.details
        return out


def error_message(reason: AdmissionReason | str, retry_after: int | None) -> str:
    """Agent-facing message for an admission denial."""
    try:
        key = AdmissionReason.parse(str(reason))
    except ValueError:
        key = None
    base = _ADMISSION_MESSAGES.get(key, "Rate limit exceeded.") if key else "Rate limit exceeded."
    if not retry_after:
        return base
    return f"{base} Retry after {int(retry_after)} seconds."


def admission_error(result: AdmissionResult) -> ToolError:
    """Map a denied admission to the public error taxonomy."""
    reason = result.reason or AdmissionReason.STORE_UNAVAILABLE
    if reason == AdmissionReason.INVALID_REQUEST:
        return validation_failed(result.snapshot.get("detail") or error_message(reason, None))
    code = ErrorCode.INTERNAL_ERROR if reason == AdmissionReason.STORE_UNAVAILABLE else ErrorCode.ADMISSION_DENIED
    return ToolError(
        code=code,
        message=error_message(reason, result.retry_after_seconds),
        reason=str(reason),
        retry_after_seconds=result.retry_after_seconds,
        details={k: v for k, v in result.snapshot.items() if k in {"plan", "operation_class", "limit", "max_items", "requested"}},
    )


def session_gone(code: ErrorCode = ErrorCode.SESSION_EXPIRED) -> ToolError:
    return ToolError(
        code=code,
        message=SESSION_GONE_MESSAGE,
        suggestion="Call the tool again with stage=prepare to obtain a new session.",
    )


def validation_failed(message: str, **details: Any) -> ToolError:
    return ToolError(code=ErrorCode.VALIDATION_FAILED, message=message, details=details)


def internal_error(message: str = "Internal error. Please retry later.") -> ToolError:
    return ToolError(code=ErrorCode.INTERNAL_ERROR, message=message)
