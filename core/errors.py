"""Exception taxonomy for the Job Execution Engine.

Run-level failures derive from :class:`JobRunError`; the worker loop treats
every ``JobRunError`` (and any unexpected exception escaping a run) as
retryable. The remaining classes are either rejected at submission time or
only ever logged.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "EngineError",
    "InvalidScheduleError",
    "NotFoundError",
    "DuplicateJobError",
    "JobRunError",
    "RequiredSelectorMissingError",
    "NavigationTimeoutError",
    "LocatorTimeoutError",
    "BrowserUnavailableError",
    "ProviderPartialFailureError",
    "ExhaustedRetriesError",
    "JobCancelledError",
]


class EngineError(Exception):
    """Base class for all engine errors."""


class InvalidScheduleError(EngineError):
    """Malformed cron expression; the job is never enqueued."""

    def __init__(self, expression: str, reason: str = "") -> None:
        self.expression = expression
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid cron expression {expression!r}{detail}")


class NotFoundError(EngineError):
    """A job or execution id is unknown to the persistence gateway."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class DuplicateJobError(EngineError):
    """The job is already queued or running."""

    def __init__(self, job_id: str, where: str) -> None:
        self.job_id = job_id
        self.where = where
        super().__init__(f"Job {job_id} is already {where}")


class JobRunError(EngineError):
    """A run attempt failed in a way that may succeed on retry."""


class RequiredSelectorMissingError(JobRunError):
    def __init__(self, field_name: str, selector: str) -> None:
        self.field_name = field_name
        self.selector = selector
        super().__init__(
            f"Required selector for field {field_name!r} not found: {selector}"
        )


class NavigationTimeoutError(JobRunError):
    def __init__(self, url: str, timeout_ms: int) -> None:
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(f"Navigation to {url} timed out after {timeout_ms} ms")


class LocatorTimeoutError(JobRunError):
    def __init__(self, selector: str, timeout_ms: int) -> None:
        self.selector = selector
        self.timeout_ms = timeout_ms
        super().__init__(f"Locator {selector!r} not visible after {timeout_ms} ms")


class BrowserUnavailableError(JobRunError):
    """The shared browser could not be launched or has gone away."""


class ProviderPartialFailureError(EngineError):
    """One structured-data provider failed; logged, never raised to callers."""

    def __init__(self, provider: str, cause: Optional[BaseException] = None) -> None:
        self.provider = provider
        self.cause = cause
        super().__init__(f"Provider {provider} failed: {cause}")


class ExhaustedRetriesError(EngineError):
    """Terminal failure after the retry ceiling was reached."""

    def __init__(self, job_id: str, retries: int, last_error: str = "") -> None:
        self.job_id = job_id
        self.retries = retries
        self.last_error = last_error
        super().__init__(
            f"Job {job_id} failed after {retries} retries: {last_error}"
        )


class JobCancelledError(EngineError):
    """Raised inside a run once an explicit cancel has been observed."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")
