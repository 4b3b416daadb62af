from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    VALIDATION = "validation"
    CAPTURE_FAILED = "capture_failed"
    INCOMPATIBLE = "incompatible"
    BILLING_DECLINED = "billing_declined"
    MIGRATION_FAILED = "migration_failed"
    VERIFICATION_FAILED = "verification_failed"
    FINALIZE_FAILED = "finalize_failed"
    CANCELLED = "cancelled"
    ROLLBACK_PARTIAL = "rollback_partial"
    INTERNAL = "internal"


class TierflowError(Exception):
    kind: FailureKind = FailureKind.INTERNAL
    retryable: bool = False


class UpgradeValidationError(TierflowError):
    kind = FailureKind.VALIDATION


class TierConfigurationError(UpgradeValidationError):
    """Unknown tier identifier or malformed tier table."""


class UpgradeInProgressError(TierflowError):
    kind = FailureKind.VALIDATION

    def __init__(self, user_id: str, session_id: str) -> None:
        super().__init__("upgrade already in progress")
        self.user_id = user_id
        self.session_id = session_id


class SessionNotFoundError(TierflowError):
    pass


class CancellationRejectedError(TierflowError):
    pass


class RetryRejectedError(TierflowError):
    pass


class RollbackNotAllowedError(TierflowError):
    pass


class DataStoreUnavailableError(TierflowError):
    retryable = True


class SnapshotCaptureError(TierflowError):
    kind = FailureKind.CAPTURE_FAILED


@dataclass(slots=True)
class ErrorInfo:
    category: str
    component: str
    error_type: str
    message_signature: str
    retryable: bool
    http_status: int | None = None


def _normalize_message(message: str, max_len: int = 180) -> str:
    msg = message.lower()
    msg = re.sub(r"\s+", " ", msg)
    msg = re.sub(r"\d+", "#", msg)
    return msg.strip()[:max_len]


def _compact_message(message: str, max_len: int = 220) -> str:
    msg = message.lower()
    msg = re.sub(r"\s+", " ", msg)
    return msg.strip()[:max_len]


def classify_error(exc: BaseException, *, category: str, component: str) -> ErrorInfo:
    name = exc.__class__.__name__.lower()
    msg = str(exc)
    normalized = _normalize_message(msg)

    retryable = True
    lowered = f"{name} {normalized}"
    if any(k in lowered for k in ["auth", "unauthorized", "forbidden", "invalid", "badrequest", "permission", "validation"]):
        retryable = False
    if any(k in lowered for k in ["timeout", "temporar", "connection", "reset", "unavailable", "locked", "5##"]):
        retryable = True

    status = None
    m = re.search(r"\b(4\d\d|5\d\d)\b", msg.lower())
    if m:
        status = int(m.group(1))
        if 400 <= status < 500 and status not in {408, 429}:
            retryable = False

    if isinstance(exc, TierflowError):
        retryable = exc.retryable

    return ErrorInfo(
        category=category,
        component=component,
        error_type=exc.__class__.__name__,
        message_signature=normalized,
        retryable=retryable,
        http_status=status,
    )


def compact_error_summary(exc: BaseException, max_len: int = 220) -> str:
    return f"{exc.__class__.__name__}: {_compact_message(str(exc), max_len=max_len)}"
