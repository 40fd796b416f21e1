"""
Typed failures raised by platform clients and the student pipeline.
"""


class FetchError(Exception):
    """A platform fetch that produced no usable metrics."""

    kind = "api"
    retryable = True

    def __init__(self, message, platform=None):
        super().__init__(message)
        self.message = message
        self.platform = platform

    def as_dict(self):
        return {"kind": self.kind, "message": self.message}


class UserNotFound(FetchError):
    kind = "not_found"
    retryable = False


class AccessForbidden(FetchError):
    kind = "forbidden"
    retryable = False


class RateLimited(FetchError):
    kind = "rate_limited"


class ServiceUnavailable(FetchError):
    kind = "unavailable"


class FetchTimeout(FetchError):
    kind = "timeout"


class NetworkError(FetchError):
    kind = "network"


class PlatformAPIError(FetchError):
    kind = "api"


class PipelineError(Exception):
    """Raised for failures outside a single platform fetch."""


class JobTimeoutError(PipelineError):
    """The unit of work did not finish its fan-out before the job timeout."""


class BatchAlreadyRunning(PipelineError):
    """Another batch holds the sweep lock."""


class EmptyRosterError(PipelineError):
    """A batch was requested for a roster with no usable students."""
