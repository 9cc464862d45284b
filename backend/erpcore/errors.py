# Overview: Domain error taxonomy shared by services, routes and the CLI.

"""
Error taxonomy for document operations.

Each class carries the HTTP status the REST layer answers with and a
machine-readable ``code`` so callers can branch without parsing messages.

    ValidationError       400  bad input shape, raised before any write
    ReferentialError      422  missing/inactive client, product, warehouse or
                               originating document, raised before the unit
    ConflictError         409  raised inside the unit, full rollback
      DuplicateNumberError     retryable once by re-running allocation
      LifecycleError           illegal state transition
    ExternalServiceError  502  approval service failed after the local commit
    FatalError            500  unexpected store failure, full rollback
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for every error the core raises on purpose."""

    kind = "domain"
    http_status = 400
    default_code = "DOMAIN_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DomainError):
    """400-level input problem."""

    kind = "validation"
    http_status = 400
    default_code = "INVALID_INPUT"


class ReferentialError(DomainError):
    """A referenced entity is missing, inactive, or not in a usable state."""

    kind = "referential"
    http_status = 422
    default_code = "REFERENCE_NOT_FOUND"


class ConflictError(DomainError):
    """409-level business rule conflict (e.g., over-return of quantity)."""

    kind = "conflict"
    http_status = 409
    default_code = "CONFLICT"


class DuplicateNumberError(ConflictError):
    """The document number is already taken within its family and scope."""

    default_code = "DUPLICATE_DOCUMENT_NUMBER"
    retryable = True


class LifecycleError(ConflictError):
    """Raised when an invalid lifecycle transition is attempted."""

    default_code = "INVALID_TRANSITION"


class ExternalServiceError(DomainError):
    """The approval service failed or could not be reached."""

    kind = "external"
    http_status = 502
    default_code = "APPROVAL_SERVICE_FAILED"


class FatalError(DomainError):
    """Unexpected store failure; the unit was rolled back."""

    kind = "fatal"
    http_status = 500
    default_code = "INTERNAL_ERROR"
