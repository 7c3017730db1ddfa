"""
Custom exceptions for GigLedger.

Provides a hierarchy of exceptions with error codes for consistent error handling.
Pipeline handlers and the HTTP layer rely on the category of an error to decide
whether it is rejected outright or retried by the transport:

- ValidationError (GL-1XX): bad input, never retried.
- TransientInfraError (GL-2XX): infrastructure hiccup, retried.
- RaceConditionError (GL-3XX): concurrent duplicate insert, converted to success.
- DataIntegrityError (GL-4XX): corrupt or malformed state, fatal.
"""
from typing import Any, Dict, Optional


class GigLedgerError(Exception):
    """
    Base exception for all GigLedger errors.

    Attributes:
        error_code: Unique error code (e.g., GL-100)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "GL-000"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


# Validation Errors (GL-1XX)
class ValidationError(GigLedgerError):
    """Input rejected by a business rule."""
    error_code = "GL-100"
    http_status = 400

    def __init__(self, message: str = "Validation failed", **kwargs):
        super().__init__(message, **kwargs)


class MissingYearlyStatementError(ValidationError):
    """Reconciliation requested for a year without a Yearly statement."""
    error_code = "GL-101"

    def __init__(self, provider: str, year: int, **kwargs):
        message = f"No Yearly {provider} statement found for {year}"
        super().__init__(message, details={"provider": provider, "year": year}, **kwargs)


class DuplicateStatementError(ValidationError):
    """A statement for the same natural key or file already exists."""
    error_code = "GL-102"
    http_status = 409

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)


class PostingBlockedError(ValidationError):
    """Statement cannot be submitted because of granularity rules."""
    error_code = "GL-103"
    http_status = 409

    def __init__(self, statement_id: str, **kwargs):
        message = (
            "Statement is stored for reconciliation only; a more granular "
            "statement exists for the same year"
        )
        super().__init__(message, details={"statement_id": statement_id}, **kwargs)


class UnsupportedProviderError(ValidationError):
    """Statement provider could not be recognized."""
    error_code = "GL-104"

    def __init__(self, detected: Optional[str], supported: list, **kwargs):
        message = f"Unrecognized statement provider. Supported: {', '.join(supported)}"
        super().__init__(
            message,
            details={"detected_provider": detected, "supported_providers": supported},
            **kwargs,
        )


class FileTooLargeError(ValidationError):
    """File exceeds maximum size limit."""
    error_code = "GL-105"
    http_status = 413

    def __init__(self, size: int, max_size: int, **kwargs):
        message = f"File too large. Maximum size: {max_size // (1024 * 1024)}MB"
        super().__init__(message, details={"size": size, "max_size": max_size}, **kwargs)


# Transient Infrastructure Errors (GL-2XX)
class TransientInfraError(GigLedgerError):
    """Temporary infrastructure failure; safe to retry."""
    error_code = "GL-200"
    http_status = 503
    retryable = True

    def __init__(self, message: str = "Temporary infrastructure failure", **kwargs):
        super().__init__(message, **kwargs)


class AnalyzerError(TransientInfraError):
    """Document analysis failed or timed out."""
    error_code = "GL-201"

    def __init__(self, message: str = "Document analysis failed", **kwargs):
        super().__init__(message, **kwargs)


class StorageUnavailableError(TransientInfraError):
    """Object storage could not be reached."""
    error_code = "GL-202"

    def __init__(self, path: str, **kwargs):
        message = f"Object storage unavailable for {path}"
        super().__init__(message, details={"path": path}, **kwargs)


# Race Conditions (GL-3XX)
class RaceConditionError(GigLedgerError):
    """A concurrent delivery already inserted the same natural key."""
    error_code = "GL-300"
    http_status = 409

    def __init__(self, message: str = "Concurrent duplicate insert", **kwargs):
        super().__init__(message, **kwargs)


# Data Integrity Errors (GL-4XX)
class DataIntegrityError(GigLedgerError):
    """Stored data is malformed; retrying will not help."""
    error_code = "GL-400"
    http_status = 500

    def __init__(self, message: str = "Data integrity violation", **kwargs):
        super().__init__(message, **kwargs)


class InvalidPeriodKeyError(DataIntegrityError):
    """Period key does not match its period type."""
    error_code = "GL-401"

    def __init__(self, period_type: str, period_key: str, **kwargs):
        message = f"Invalid period key '{period_key}' for period type '{period_type}'"
        super().__init__(
            message, details={"period_type": period_type, "period_key": period_key}, **kwargs
        )


class UnsupportedContentTypeError(DataIntegrityError):
    """No extractor is registered for a content type."""
    error_code = "GL-402"

    def __init__(self, content_type: str, **kwargs):
        message = f"No extractor registered for content type '{content_type}'"
        super().__init__(message, details={"content_type": content_type}, **kwargs)


class LedgerImmutabilityError(DataIntegrityError):
    """Attempt to modify or delete a posted ledger row."""
    error_code = "GL-403"

    def __init__(self, entity: str, **kwargs):
        message = f"Ledger rows are append-only; {entity} cannot be modified or deleted"
        super().__init__(message, details={"entity": entity}, **kwargs)


class NotFoundError(DataIntegrityError):
    """Referenced entity does not exist for the tenant."""
    error_code = "GL-404"
    http_status = 404

    def __init__(self, entity: str, entity_id: str, **kwargs):
        message = f"{entity} {entity_id} not found"
        super().__init__(message, details={"entity": entity, "entity_id": entity_id}, **kwargs)


# Cancellation (GL-5XX)
class OperationCancelledError(GigLedgerError):
    """Handler was cancelled before commit."""
    error_code = "GL-500"
    http_status = 499

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(message, **kwargs)
