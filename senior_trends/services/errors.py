from __future__ import annotations


class YouTubeServiceError(Exception):
    pass


class NoCredentialAvailableError(YouTubeServiceError):
    """Raised when the pool has no credential that can pay for the next call."""


class YouTubeApiError(YouTubeServiceError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class QuotaExceededError(YouTubeApiError):
    """
    A 403 with a quota reason.

    `pool_exhausted` is false when the pool still had a key able to pay for the call
    afterwards, so the 403 only costs the current unit of work.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        pool_exhausted: bool = True,
    ) -> None:
        super().__init__(message, status_code=status_code, reason=reason)
        self.pool_exhausted = pool_exhausted


class CredentialRejectedError(YouTubeApiError):
    pass


class YouTubeNotFoundError(YouTubeApiError):
    pass


class FetchRetriesExhaustedError(YouTubeServiceError):
    def __init__(self, message: str, *, attempts: int, status_code: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


def quota_is_spent(exc: BaseException) -> bool:
    """True when no key can pay for further calls, as opposed to a one-off quota 403."""
    if isinstance(exc, NoCredentialAvailableError):
        return True
    return isinstance(exc, QuotaExceededError) and exc.pool_exhausted
