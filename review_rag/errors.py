"""Error taxonomy shared by every stage of the review pipeline.

Each error carries a stable ``code`` and a ``retryable`` flag so the HTTP
layer and the result cache can render a structured error without knowing
which stage raised it.
"""

from typing import Dict


class ReviewError(Exception):
    code = "review_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(ReviewError):
    code = "validation_error"


class NotFound(ReviewError):
    code = "not_found"


class RetryableError(ReviewError):
    """Transient upstream failure (rate limit, 5xx, connection reset)."""

    code = "retryable_error"
    retryable = True


class FatalError(ReviewError):
    """Permanent upstream failure (malformed input, rejected credentials)."""

    code = "fatal_error"


class UnavailableError(ReviewError):
    """The vector store could not be reached."""

    code = "store_unavailable"
    retryable = True


class BudgetExceeded(ReviewError):
    code = "budget_exceeded"

    def __init__(self, org_id: str, period: str, spent: float, ceiling: float):
        super().__init__(
            f"organization {org_id} spent {spent:.4f} USD of its "
            f"{period} ceiling of {ceiling:.4f} USD"
        )
        self.org_id = org_id
        self.period = period
        self.spent = spent
        self.ceiling = ceiling


class Throttled(ReviewError):
    code = "throttled"
    retryable = True

    def __init__(self, org_id: str, inflight: int, queued: int):
        super().__init__(
            f"organization {org_id} has {inflight} calls in flight and "
            f"{queued} queued; admission queue is full"
        )
        self.org_id = org_id


class GenerationFailed(ReviewError):
    code = "generation_failed"
    retryable = True

    def __init__(self, reasons: Dict[str, str]):
        summary = "; ".join(f"{model}: {reason}" for model, reason in reasons.items())
        super().__init__(f"all models failed ({summary or 'no models configured'})")
        self.reasons = reasons

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["reasons"] = dict(self.reasons)
        return payload


class DeadlineExceeded(ReviewError, TimeoutError):
    """The caller-supplied deadline expired before the review finished."""

    code = "timeout"
    retryable = True

