"""
errors.py

Error taxonomy for the job engine.

    CompletionError        : raised by the HTTP clients; carries the HTTP
                              status (None for network-level failures).
    TransientServiceError  : 429 / 5xx / no status. Retried by RetryPolicy.
    FatalServiceError      : anything else, or retries exhausted. Aborts a
                              direct-mode job.
    MalformedOutputError   : model text not in the expected JSON shape.
                              Always recovered by the raw-text fallback.
    MissingMetadataError / MissingSourceDataError
                           : job config or original CSV not in the store.
                              Fatal before any chunk work starts.
"""

from typing import Optional


class CompletionError(Exception):
    """Base exception for completion / batch API failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientServiceError(CompletionError):
    """Rate limit, server-side or network error. Retried."""
    pass


class FatalServiceError(CompletionError):
    """Non-retryable failure, or a retryable one that ran out of attempts."""
    pass


class MalformedOutputError(ValueError):
    """Completion text did not decode into the results contract."""
    pass


class JobDataError(Exception):
    """Job integrity problem detected before chunk processing."""
    pass


class MissingMetadataError(JobDataError):
    pass


class MissingSourceDataError(JobDataError):
    pass
