"""
Error types raised by the reference data clients and the resilience layer.
"""
from typing import Optional


class ReferenceDataError(RuntimeError):
    """Base class for reference lookup failures."""
    recoverable = False


class InvalidInputError(ReferenceDataError):
    pass


class RateLimitExceededError(ReferenceDataError):
    def __init__(self, service: str, retry_after: int):
        super().__init__(f"{service} rate limit exceeded, retry in {retry_after}s")
        self.service = service
        self.retry_after = retry_after


class RemoteTimeoutError(ReferenceDataError):
    recoverable = True


class RemoteServiceError(ReferenceDataError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def recoverable(self) -> bool:
        # Network failures carry no status code and are worth retrying
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class MalformedPayloadError(RemoteServiceError):
    """Response decoded but did not have the expected shape."""

    @property
    def recoverable(self) -> bool:
        return False


class CircuitOpenError(ReferenceDataError):
    def __init__(self, service: str):
        super().__init__(f"Circuit breaker is open for {service}")
        self.service = service


class FallbackUnavailableError(ReferenceDataError):
    pass


class UploadFormatError(ValueError):
    """Raised when an uploaded sheet has no rows or no recognizable columns."""
    pass


class UploadReadError(UploadFormatError):
    """The file could not be decoded as CSV or Excel."""
    pass


def is_recoverable(error: Exception) -> bool:
    if isinstance(error, ReferenceDataError):
        return bool(error.recoverable)
    return isinstance(error, (TimeoutError, ConnectionError, OSError))
