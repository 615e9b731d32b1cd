"""Error types for the EMR boundary and scheduling services."""

from typing import Optional

from app.infra.resilience import CircuitOpenError


class EMRError(Exception):
    """Base error for practice-management system calls.

    Attributes:
        status_code: HTTP status when the error came from a response
        retryable: whether retrying the same request may succeed
    """

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EMRTransientError(EMRError):
    """Server error, timeout or network failure."""

    retryable = True


class EMRRateLimitedError(EMRTransientError):
    """Remote side returned 429."""


class EMRClientError(EMRError):
    """Request rejected by the remote side (4xx). Not retried."""


class EMRNotFoundError(EMRClientError):
    """Requested resource does not exist."""


class EMRAuthenticationError(EMRError):
    """Token acquisition failed or the remote side returned 401."""


class AppointmentConflictError(EMRClientError):
    """Creation or update was rejected because the time is taken."""


class SchedulingError(Exception):
    """Raised for invalid scheduling requests."""


__all__ = [
    "AppointmentConflictError",
    "CircuitOpenError",
    "EMRAuthenticationError",
    "EMRClientError",
    "EMRError",
    "EMRNotFoundError",
    "EMRRateLimitedError",
    "EMRTransientError",
    "SchedulingError",
]
