"""Exception taxonomy shared by the pipelines and the HTTP layer.

Every error carries a stable ``code`` string, a human-readable message, the
HTTP status the API layer should answer with and, where it makes sense, a
``{field: [messages]}`` map.
"""
from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base exception for all actor intake errors."""

    code: str = "intake_error"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or {}
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the public error envelope."""
        body: dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


# =============================================================================
# Validation
# =============================================================================


class ValidationFailed(IntakeError):
    """Malformed or missing input."""

    code = "validation_failed"
    status_code = 422

    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__("The provided data is invalid.", errors=errors)


# =============================================================================
# Business rules
# =============================================================================


class BusinessRuleViolation(IntakeError):
    """Input is well-formed but a business rule rejects it."""

    code = "actor_processing_failed"
    status_code = 422

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        errors: dict[str, list[str]] | None = None,
        email: str | None = None,
    ) -> None:
        super().__init__(message, errors=errors, details={"reason": reason, "email": email})
        self.reason = reason
        self.email = email

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class DuplicateEmail(BusinessRuleViolation):
    """A live actor already uses this email."""

    status_code = 409

    def __init__(self, email: str) -> None:
        super().__init__(
            f"Actor with email '{email}' already exists",
            reason="duplicate_email",
            errors={"email": ["This email has already been used for an actor submission."]},
            email=email,
        )


class NotFailed(BusinessRuleViolation):
    """Retry requested for an actor that is not in the failed state."""

    def __init__(self, current_status: str, email: str | None = None) -> None:
        super().__init__(
            "Actor is not in failed state",
            reason="not_failed",
            errors={"current_status": [current_status]},
            email=email,
        )
        self.current_status = current_status


class RetryLimitExceeded(BusinessRuleViolation):
    """Manual retries exhausted for an actor."""

    def __init__(self, retry_count: int, limit: int, email: str | None = None) -> None:
        super().__init__(
            f"Actor processing has already failed {retry_count} times (limit {limit})",
            reason="retry_limit_exceeded",
            errors={"retry_count": [str(retry_count)]},
            email=email,
        )
        self.retry_count = retry_count
        self.limit = limit


class MissingRequiredFields(BusinessRuleViolation):
    """Extraction came back without usable required fields."""

    def __init__(self, fields: list[str], email: str | None = None) -> None:
        super().__init__(
            f"Missing required fields: {', '.join(fields)}",
            reason="missing_required_fields",
            errors={"required_fields": list(fields)},
            email=email,
        )
        self.fields = list(fields)


# =============================================================================
# Extraction
# =============================================================================


class ExtractionError(IntakeError):
    """Terminal failure of the external extraction capability."""

    code = "extraction_failed"
    status_code = 503
    retryable = False
    # Backend-health failures open the circuit; request-specific ones opt out
    counts_toward_circuit = True

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        api_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details={"request_id": request_id})
        self.request_id = request_id
        self.api_response = api_response

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        # Vendor detail stays in the logs
        body["message"] = "Unable to process actor information at this time. Please try again later."
        body["meta"] = {"retryable": self.retryable, "kind": type(self).__name__}
        return body


# =============================================================================
# Lookup / transport
# =============================================================================


class ActorNotFound(IntakeError):
    """Actor missing or soft-deleted."""

    code = "actor_not_found"
    status_code = 404

    def __init__(self, uuid: str) -> None:
        super().__init__("Actor not found.", details={"uuid": uuid})
        self.uuid = uuid


class ProcessingError(IntakeError):
    """Unexpected failure inside the pipeline."""

    code = "internal_server_error"
    status_code = 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": "An unexpected error occurred. Please try again later.",
        }


class RateLimitExceeded(IntakeError):
    """Too many submissions from one client."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests. Please slow down.", details={"retry_after": retry_after})
        self.retry_after = retry_after


class CsrfTokenMismatch(IntakeError):
    """Anti-forgery header missing or different from the cookie."""

    code = "csrf_token_mismatch"
    status_code = 419

    def __init__(self) -> None:
        super().__init__("CSRF token mismatch.")
