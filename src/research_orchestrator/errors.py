from __future__ import annotations


class JobError(Exception):
    """Base class for background job failures."""


class RateLimitedError(JobError):
    def __init__(self, message: str = "rate limited", retry_after_sec: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_sec = retry_after_sec


class TransientError(JobError):
    """Network or timeout failure; safe to retry."""


class PermanentError(JobError):
    """Failure that will not go away on retry (not found, forbidden, bad payload)."""


class StorageError(JobError):
    """Persistence layer unavailable."""


class UnknownWorkKindError(PermanentError):
    pass


class InvalidTransitionError(JobError, ValueError):
    def __init__(self, entity: str, entity_id: str, from_state: str | None, to_state: str) -> None:
        current = from_state if from_state is not None else "missing"
        super().__init__(f"{entity} {entity_id}: cannot move from {current} to {to_state}")
        self.entity = entity
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state


RETRYABLE_ERRORS = (RateLimitedError, TransientError)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    name = type(exc).__name__.lower()
    text = str(exc).lower()
    return (
        "ratelimit" in name
        or "resource_exhausted" in text
        or "rate limit" in text
        or "429" in text
        or "too many requests" in text
    )


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, PermanentError):
        return False
    return True


class UnauthorizedTriggerError(JobError):
    """On-demand trigger called without the shared cron secret."""


class UnknownTaskError(JobError):
    pass
