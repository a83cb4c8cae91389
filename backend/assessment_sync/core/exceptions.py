"""
Error taxonomy for the assessment sync engine.

Local storage failures and remote failures are kept in separate branches so
callers can tell "the disk said no" apart from "the network said no".
"""
from typing import Optional


class AssessmentSyncError(Exception):
    """Base class for all sync engine errors."""
    pass


# ---------------------------
# Local persistence
# ---------------------------

class LocalStorageError(AssessmentSyncError):
    """Raised when the durable local queue rejects a read or write."""
    pass


# ---------------------------
# Remote service
# ---------------------------

class SyncError(AssessmentSyncError):
    """Base class for failures talking to the remote service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(SyncError):
    """Timeout, connection failure or 5xx. Worth retrying."""
    pass


class MalformedResponseError(TransientNetworkError):
    """2xx response whose body is not the expected shape."""
    pass


class PermanentRejectionError(SyncError):
    """Validation rejection (4xx). Retrying cannot succeed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        record=None,
    ):
        super().__init__(message, status_code=status_code)
        self.detail = detail
        self.record = record


# ---------------------------
# Scoring
# ---------------------------

class EmptyAssessmentError(ValueError):
    """Raised when an assessment with no responses is scored or submitted."""
    pass
