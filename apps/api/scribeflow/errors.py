"""Application exception types."""

from scribeflow.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


class PipelineError(Exception):
    """Base class for failures raised while driving a job through the pipeline."""

    retryable = True


class InputError(PipelineError):
    """The input media file is missing or unreadable. Fatal for the job."""

    retryable = False


class TransientRemoteError(PipelineError):
    """Network fault, 5xx, 429, 408 or attempt timeout reported by the provider boundary."""

    def __init__(self, message: str, *, status_code: int | None = None, retry_after: float | None = None) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class CircuitOpenError(TransientRemoteError):
    """The provider circuit is open; the call never reached the network."""


class ProviderRejection(PipelineError):
    """The provider refused the request (4xx other than 429) or reported a failed transcript."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class VerificationError(PipelineError):
    """The downloaded transcript failed the structural completeness check."""


class DuplicateContentError(PipelineError):
    """Another job in the queue already owns this content. Fatal for the job."""

    retryable = False


class CancellationRequested(Exception):
    """Raised inside an executor when its cancellation handle has been signalled."""


__all__ = [
    "ApiError",
    "CancellationRequested",
    "CircuitOpenError",
    "DuplicateContentError",
    "InputError",
    "PipelineError",
    "ProviderRejection",
    "TransientRemoteError",
    "VerificationError",
]
