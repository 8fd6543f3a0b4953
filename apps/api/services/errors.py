"""
Pipeline exceptions.

Every failure the generation pipeline can surface derives from PipelineError.
``code`` is the terse, user-visible identifier; ``message`` may carry more
context and ``details`` is reserved for operator diagnostics.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for the generation pipeline."""

    code = "pipeline_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the API error envelope."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
        }


class InsufficientCredits(PipelineError):
    """Raised when a reservation cannot be covered by the subscription."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class SubscriptionInactive(PipelineError):
    """Raised when the subscription is expired or cancelled."""

    code = "subscription_inactive"
    status_code = 402


class ValidationError(PipelineError):
    """Raised when generation type or input params are malformed."""

    code = "validation_error"
    status_code = 422


class NotFound(PipelineError):
    """Raised when a requested record does not exist or is not visible."""

    code = "not_found"
    status_code = 404


class InvalidTransition(PipelineError):
    """Raised when a status change would leave a terminal state."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, request_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Generation {request_id} is {current_status}; cannot move to {target_status}",
            details={"current": current_status, "target": target_status},
        )
        self.current_status = current_status
        self.target_status = target_status


class ProviderError(PipelineError):
    """Raised by the generation provider when it cannot produce a result."""

    code = "provider_error"
    status_code = 502


class ProviderUnavailable(ProviderError):
    """Provider could not be reached; the job is retried by the queue."""

    code = "provider_unavailable"
    status_code = 503


class QueueUnavailable(PipelineError):
    """Raised when a job cannot be handed to the queue."""

    code = "queue_unavailable"
    status_code = 503


class DeliveryTransientError(PipelineError):
    """Channel send failed in a way that may succeed on retry."""

    code = "delivery_transient"
    status_code = 503

    def __init__(self, message: str, retry_after: Optional[int] = None, original_error: Optional[Exception] = None):
        details = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(message, details, original_error)
        self.retry_after = retry_after


class DeliveryPermanentError(PipelineError):
    """Channel refused the message and retrying will not help."""

    code = "delivery_permanent"
    status_code = 502


class RenderingError(PipelineError):
    """Document rendering failed or timed out."""

    code = "rendering_error"
    status_code = 500


class ReservationConflict(PipelineError):
    """Concurrent writers kept invalidating the subscription read; the client may retry."""

    code = "reservation_conflict"
    status_code = 409
