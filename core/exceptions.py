"""
Custom exceptions for the ingestion pipeline with structured error context.

This module provides the exception hierarchy used throughout the ETL
orchestrator. Each exception includes context information for debugging
and for the ingestion log.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── SourceConnectionError (retryable)
    │   │   └── PartialExtractionError
    │   ├── AuthenticationError
    │   ├── ResourceNotFoundError
    │   └── DataFormatError
    ├── TransformationError
    │   └── SchemaMismatchError
    ├── EnrichmentLookupError
    ├── LoadError
    │   └── PersistenceError
    ├── DataQualityAbort
    ├── ConcurrencyConflict
    ├── RunCancelled
    ├── InvalidStateTransition
    ├── SourceNotFoundError / RunNotFoundError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, stage, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Source temporarily unreachable
    - Service unavailable (HTTP 503)
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Unparseable payloads
    - Schema mismatches
    - Data quality aborts
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class SourceConnectionError(RetryableError, ExtractionError):
    """
    Source unreachable or transient I/O failure during extraction.

    Context should include:
        - source_id / source_name
        - operation: probe, connect, read
    """
    pass


class PartialExtractionError(SourceConnectionError):
    """
    Stream broke after some records were already emitted.

    The emitted records have been persisted by the caller, so retrying the
    extraction re-reads them idempotently.
    """

    def __init__(
        self,
        message: str,
        records_emitted: int,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.records_emitted = records_emitted
        self.context["records_emitted"] = records_emitted


class AuthenticationError(NonRetryableError, ExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class DataFormatError(NonRetryableError, ExtractionError):
    """Unparseable payload; not retryable without fixing the source."""
    pass


class ResourceNotFoundError(NonRetryableError, ExtractionError):
    """Resource not found errors (HTTP 404, missing file) that should not be retried."""
    pass


# ============================================================================
# Transformation / Enrichment Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class SchemaMismatchError(NonRetryableError, TransformationError):
    """
    Source fields cannot be mapped to the canonical schema.

    Context should include:
        - raw_content_hash: Hash of the offending record
        - available_fields: Fields present in the payload
    """
    pass


class EnrichmentLookupError(ETLException):
    """External lookup failed; the Enricher degrades to a warning."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class PersistenceError(LoadError):
    """
    Exception raised when database writes fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPSERT)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Run Lifecycle Errors
# ============================================================================

class DataQualityAbort(NonRetryableError):
    """Rejection rate exceeded the configured threshold; operator must review the source."""

    def __init__(
        self,
        message: str,
        rejection_rate: float,
        threshold: float,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.rejection_rate = rejection_rate
        self.threshold = threshold
        self.context.update({"rejection_rate": rejection_rate, "threshold": threshold})


class ConcurrencyConflict(ETLException):
    """Another run is active for the same scope."""

    def __init__(
        self,
        message: str,
        scope: str,
        active_run_started_at: Optional[datetime] = None,
        active_run_id: Optional[str] = None
    ):
        super().__init__(message, context={"scope": scope, "active_run_id": active_run_id})
        self.scope = scope
        self.active_run_started_at = active_run_started_at
        self.active_run_id = active_run_id


class RunCancelled(ETLException):
    """User-requested stop observed by the running pipeline."""
    pass


class InvalidStateTransition(NonRetryableError):
    """Attempted to move a run that is already terminal or out of order."""
    pass


class SourceNotFoundError(NonRetryableError):
    """Requested data source does not exist."""
    pass


class RunNotFoundError(NonRetryableError):
    """Requested ingestion run does not exist."""
    pass
