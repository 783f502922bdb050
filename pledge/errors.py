"""Error hierarchy for the pledge service.

Every failure the core raises is a PledgeError carrying a stable code and
the HTTP status the API layer renders it with. Transfer errors never reach
HTTP; the refund distributor records them per wallet.
"""

from datetime import datetime, timezone


class PledgeError(Exception):
    """Base exception for all pledge errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict:
        """Convert to the REST error envelope."""
        return {"error": {"code": self.code, "message": self.message, **self.details}}


class ValidationError(PledgeError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class AuthError(PledgeError):
    code = "AUTH_REQUIRED"
    http_status = 401


class NotFoundError(PledgeError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(PledgeError):
    code = "INVALID_TRANSITION"
    http_status = 400


class NotFunded(InvalidTransition):
    """Transition needs funding the oracle could not confirm."""
    code = "NOT_FUNDED"


class TierLocked(PledgeError):
    code = "TIER_LOCKED"
    http_status = 400


class CompletionRejected(PledgeError):
    """The AI validator looked at the goal and said no."""

    code = "COMPLETION_REJECTED"
    http_status = 400

    def __init__(self, reason: str, suggestions: list[str] | None = None,
                 validation_details: dict | None = None):
        self.reason = reason
        self.suggestions = list(suggestions or [])
        self.validation_details = validation_details or {}
        super().__init__(
            "AI validation determined the goal is not ready for completion",
            {
                "reason": reason,
                "suggestions": self.suggestions,
                "validationDetails": self.validation_details,
            },
        )


class RateLimited(PledgeError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, hours_remaining: int | None = None,
                 next_attempt_at: float | None = None,
                 retry_after_seconds: float | None = None):
        details = {}
        if hours_remaining is not None:
            details["hoursRemaining"] = hours_remaining
        if next_attempt_at is not None:
            details["nextAttemptAllowedAt"] = datetime.fromtimestamp(
                next_attempt_at, timezone.utc).isoformat()
        if retry_after_seconds is not None:
            details["retryAfterSeconds"] = round(retry_after_seconds, 1)
        super().__init__(message, details)
        self.hours_remaining = hours_remaining
        self.next_attempt_at = next_attempt_at
        self.retry_after_seconds = retry_after_seconds


class ExternalServiceError(PledgeError):
    """Blockchain node, AI provider, or price feed unreachable or failing."""

    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 500

    def __init__(self, message: str, service: str = "", details: dict | None = None):
        merged = {"service": service} if service else {}
        merged.update(details or {})
        super().__init__(message, merged)
        self.service = service


class ServiceUnavailable(ExternalServiceError):
    """AI validator down and the task completion rate is too low to fall back."""

    code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str, completion_rate: float, minimum_required: float):
        super().__init__(message, service="ai", details={
            "completionRate": f"{completion_rate:.1f}%",
            "minimumRequired": f"{minimum_required:g}%",
        })
        self.completion_rate = completion_rate
        self.minimum_required = minimum_required


class CapacityError(PledgeError):
    code = "TOO_MANY_SUBSCRIBERS"
    http_status = 503


class TransferError(PledgeError):
    """A single custodial transfer failed (signing, broadcast, node rejection)."""
    code = "TRANSFER_FAILED"


class InsufficientBalance(TransferError):
    code = "INSUFFICIENT_BALANCE"
