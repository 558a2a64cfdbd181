"""
Pipeline error taxonomy.

Every failure that crosses a component boundary is one of these types, so
callers can decide between retry, defer and surface without inspecting
backend-specific exceptions:

  TransientIOError         retryable: storage / network hiccup
  NotFoundError            locator or record no longer resolves: not retryable
  QuotaExceededError       organization capacity hit: surfaced, not retried
  PolicyViolationError     size / mime type rejected by the storage policy
  PermanentExtractionError unsupported or corrupt content: terminal for the job
  DriftError               checksum / presence mismatch found during sync
  IndexUnavailableError    search engine down: indexing deferred
  LockUnavailableError     per-file advisory lock held elsewhere (transient)
  RetryLimitExceeded       job already used all of its retries
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class; `code` is persisted on job rows, `retryable` drives retry."""

    code: str = "PIPELINE_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class TransientIOError(PipelineError):
    code = "TRANSIENT_IO"
    retryable = True


class NotFoundError(PipelineError):
    code = "NOT_FOUND"


class QuotaExceededError(PipelineError):
    code = "QUOTA_EXCEEDED"


class PolicyViolationError(PipelineError):
    code = "POLICY_VIOLATION"


class PermanentExtractionError(PipelineError):
    code = "EXTRACTION_FAILED"


class DriftError(PipelineError):
    code = "DRIFT"


class IndexUnavailableError(PipelineError):
    code = "INDEX_UNAVAILABLE"
    retryable = True


class LockUnavailableError(TransientIOError):
    code = "LOCK_UNAVAILABLE"


class RetryLimitExceeded(PipelineError):
    code = "RETRY_LIMIT"


def error_code(exc: BaseException) -> str:
    """Stable code for any exception (TimeoutError included)."""
    if isinstance(exc, PipelineError):
        return exc.code
    if isinstance(exc, TimeoutError):
        return "TIMEOUT"
    return "UNEXPECTED"


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, PipelineError):
        return exc.retryable
    # Timeouts and unexpected failures get the bounded retry budget
    return True
