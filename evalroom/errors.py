"""Error taxonomy for the reconciliation and feedback-lifecycle engine.

Every class carries a stable ``code`` used by :mod:`evalroom.services` when
converting failures into result values, and a ``retryable`` flag telling the
caller whether repeating the same action unchanged can succeed.
"""
from __future__ import annotations


class EvalroomError(Exception):
    code = "error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UpstreamGenerationError(EvalroomError):
    """LLM call failed, was rate-limited, or returned unusable output.

    ``category`` is one of ``rate_limit``, ``too_long``, ``invalid_response``
    or ``unavailable``.
    """
    code = "generation_failed"

    def __init__(self, message: str, category: str = "unavailable", retryable: bool = True):
        super().__init__(message)
        self.category = category
        self.retryable = retryable

    @property
    def is_rate_limit(self) -> bool:
        return self.category == "rate_limit"

    @property
    def is_too_long(self) -> bool:
        return self.category == "too_long"


GenerationFailed = UpstreamGenerationError


class ValidationError(EvalroomError):
    """The action is blocked until the user corrects something."""
    code = "validation_error"


class NotFoundError(ValidationError):
    code = "not_found"


class ApprovalRejected(ValidationError):
    """Approve was attempted on empty content."""
    code = "approval_rejected"


class EnhanceThrottled(ValidationError):
    """A second enhance for the same content arrived inside the debounce window."""
    code = "please_wait"
    retryable = True

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class StaleWriteError(ValidationError):
    """The caller's copy of a record is older than the stored version."""
    code = "stale_write"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class ReconciliationConflict(EvalroomError):
    """A duplicate active assignment was detected on insert.

    Resolved internally by reusing the existing row; never surfaced to users.
    """
    code = "reconciliation_conflict"

    def __init__(self, message: str, existing_id: int | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class DeliveryError(EvalroomError):
    """The delivery capability failed; ``message`` is the raw provider text."""
    code = "send_failed"


SendFailed = DeliveryError


class MissingDeliveryAddress(DeliveryError, ValidationError):
    code = "missing_address"
