"""
Centralized Error Tracking and Reporting for the Sync Module.

This module provides the exception taxonomy used across the sync engine and
a bounded tracker that aggregates item-level errors during a run.

Key Features:
- Custom Exception Classes: configuration, source fetch, external service
  (with structured status/code for transient classification), record store
  and in-progress conflicts.
- ErrorTracker: aggregates the errors of one run while keeping only a
  bounded number of them, so a run result never grows without limit.
- Severity Levels: WARNING, ERROR, CRITICAL.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any

class ErrorSeverity(Enum):
    """
    Defines the severity of an error.
    """
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

@dataclass
class SyncError:
    """
    A structured object representing a single error that occurred during the sync process.
    """
    message: str
    source_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def describe(self) -> str:
        if self.source_id:
            return f"{self.source_id}: {self.message}"
        return self.message

# Custom Exception Classes
class SyncException(Exception):
    """Base class for all custom sync exceptions."""
    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        self.message = message
        self.source_id = source_id
        self.recovery_suggestion = recovery_suggestion
        super().__init__(self.message)

class ConfigurationError(SyncException):
    """Indicates an error in the sync configuration or missing secrets."""
    pass

class SourceFetchError(SyncException):
    """Indicates a failure to fetch content from a source."""
    pass

class ExternalServiceError(SyncException):
    """Indicates a failure with an external service (e.g., Notion, Slack, OpenAI)."""
    pass

class ApiError(ExternalServiceError):
    """
    A failed HTTP API call.

    ``status`` is the HTTP status (None when the API reported the failure in
    its response body) and ``code`` the API's own error code, e.g. Slack's
    ``ratelimited`` or ``not_in_channel``.
    """
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None, source_id: Optional[str] = None):
        super().__init__(message, source_id=source_id)
        self.status = status
        self.code = code

class RecordStoreError(SyncException):
    """Indicates that the record/checkpoint store could not be read or written."""
    pass

class SyncInProgressError(SyncException):
    """Raised when an operation requires that no run is active for the source."""
    pass


class ErrorTracker:
    """
    A centralized tracker for aggregating errors during a sync run.

    Only the first ``max_errors`` errors are kept; the rest are counted.
    """
    def __init__(self, max_errors: int = 50):
        self.max_errors = max_errors
        self.errors: List[SyncError] = []
        self.suppressed = 0

    def report(self, message: str, source_id: Optional[str] = None, severity: ErrorSeverity = ErrorSeverity.ERROR, details: Optional[Dict[str, Any]] = None, recovery_suggestion: Optional[str] = None):
        """
        Report a new error.
        """
        if len(self.errors) >= self.max_errors:
            self.suppressed += 1
            return
        error = SyncError(
            message=message,
            source_id=source_id,
            severity=severity,
            details=details or {},
            recovery_suggestion=recovery_suggestion
        )
        self.errors.append(error)

    def report_exception(self, exc: Exception, severity: ErrorSeverity = ErrorSeverity.ERROR, source_id: Optional[str] = None):
        """
        Report an error from an exception.
        """
        if isinstance(exc, SyncException):
            self.report(
                message=exc.message,
                source_id=exc.source_id or source_id,
                severity=severity,
                recovery_suggestion=exc.recovery_suggestion
            )
        else:
            self.report(message=str(exc) or type(exc).__name__, source_id=source_id, severity=severity,
                        details={'exception_type': type(exc).__name__})

    def messages(self) -> List[str]:
        return [e.describe() for e in self.errors]
