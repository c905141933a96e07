"""Exception hierarchy shared by the store, router and LLM collaborators."""

from typing import Optional


class MemoryStoreError(Exception):
    """Base class for every error raised by the memory engine."""


class MemoryValidationError(MemoryStoreError, ValueError):
    """Rejected input; raised before any side effect."""


class MemoryNotFoundError(MemoryStoreError, LookupError):
    pass


class InvalidEncodingError(MemoryStoreError, ValueError):
    pass


class EmbedderUnavailableError(MemoryStoreError):
    pass


class SummarizerUnavailableError(MemoryStoreError):
    pass


class TransportError(MemoryStoreError):
    """
    A single failed call to an external HTTP service.

    `permanent` errors are surfaced immediately by the retry loop;
    `retry_after` (seconds) is the server's hint for the next attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        permanent: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.permanent = permanent


class RetryExhaustedError(TransportError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            message,
            status_code=getattr(last_error, "status_code", None),
            permanent=True,
        )
        self.attempts = attempts
        self.last_error = last_error
