"""
Error taxonomy and per-run error tracking for the contact sync pipeline.

Exceptions carry enough context (institution, recovery suggestion, consumed
tokens) for the orchestrator to turn them into an `error` phase with a
human-readable message. Non-fatal problems, such as a contact whose division
could not be resolved, are collected by an ErrorTracker instead of raised.
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
    A structured object representing a single problem seen during a sync run.
    """
    message: str
    institution_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def to_dict(self):
        return {
            "message": self.message,
            "institution_id": self.institution_id,
            "severity": self.severity.value,
            "details": self.details,
            "recovery_suggestion": self.recovery_suggestion
        }


class SyncException(Exception):
    """Base class for all sync pipeline exceptions."""
    def __init__(self, message: str, institution_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        self.message = message
        self.institution_id = institution_id
        self.recovery_suggestion = recovery_suggestion
        super().__init__(self.message)


class ConfigurationError(SyncException):
    """Invalid or missing configuration."""
    pass


class BudgetExceeded(SyncException):
    """The monthly API budget does not allow another sync."""
    def __init__(self, message: str, usage=None, institution_id: Optional[str] = None):
        self.usage = usage
        super().__init__(
            message,
            institution_id=institution_id,
            recovery_suggestion="Wait for the next billing month or raise the monthly limit."
        )


class FetchError(SyncException):
    """Every transport failed to retrieve the source URL."""
    def __init__(self, message: str, url: str, attempts: Optional[List[Dict[str, str]]] = None,
                 institution_id: Optional[str] = None):
        self.url = url
        self.attempts = attempts or []
        super().__init__(
            message,
            institution_id=institution_id,
            recovery_suggestion="Check that the site is reachable, or retry later."
        )


class ExtractionParseError(SyncException):
    """The model response could not be parsed into ExtractedData."""
    def __init__(self, message: str, raw_response: str = "", input_tokens: int = 0,
                 output_tokens: int = 0, cost_usd: float = 0.0, institution_id: Optional[str] = None):
        self.raw_response = raw_response
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.cost_usd = cost_usd
        super().__init__(
            message,
            institution_id=institution_id,
            recovery_suggestion="Retry the extraction; if it keeps failing, import the contacts as JSON."
        )

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class DivisionNotFound(SyncException):
    """A contact referenced a division name missing from the resolved division map."""
    def __init__(self, division_name: str, institution_id: Optional[str] = None):
        self.division_name = division_name
        super().__init__(f"Division not found: {division_name}", institution_id=institution_id)


class ContactImportError(SyncException):
    """Persistence failed while reconciling extracted contacts."""
    pass


class ManualImportFormatError(SyncException):
    """A manual JSON import document has an unrecognised shape."""
    pass


class SyncInProgressError(SyncException):
    """Another run currently holds the sync lease for this institution."""
    pass


class InvalidTransition(Exception):
    """A phase change not allowed by the sync state machine."""
    pass


class ErrorTracker:
    """
    A centralized tracker for aggregating errors during a sync run.
    """
    def __init__(self):
        self.errors: List[SyncError] = []

    def report(self, message: str, institution_id: Optional[str] = None, severity: ErrorSeverity = ErrorSeverity.ERROR,
               details: Optional[Dict[str, Any]] = None, recovery_suggestion: Optional[str] = None):
        """
        Report a new error.
        """
        self.errors.append(SyncError(
            message=message,
            institution_id=institution_id,
            severity=severity,
            details=details or {},
            recovery_suggestion=recovery_suggestion
        ))

    def report_exception(self, exc: SyncException, severity: ErrorSeverity = ErrorSeverity.ERROR,
                         details: Optional[Dict[str, Any]] = None):
        """
        Report an error from a SyncException.
        """
        self.report(
            message=exc.message,
            institution_id=exc.institution_id,
            severity=severity,
            details=details,
            recovery_suggestion=exc.recovery_suggestion
        )

    def get_errors(self, min_severity: ErrorSeverity = ErrorSeverity.WARNING) -> List[SyncError]:
        """
        Get all errors at or above a certain severity level.
        """
        severity_map = {
            ErrorSeverity.WARNING: 1,
            ErrorSeverity.ERROR: 2,
            ErrorSeverity.CRITICAL: 3
        }
        min_level = severity_map.get(min_severity, 1)
        return [e for e in self.errors if severity_map.get(e.severity, 1) >= min_level]
