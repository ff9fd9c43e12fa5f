"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float, message: str | None = None):
        self.timeout = timeout
        super().__init__(
            message or f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class RateLimitError(ServiceError):
    """Rate limit exceeded (HTTP 429)."""

    status_code = 429

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id)


class UpstreamError(ServiceError):
    """Upstream responded with an error status, or could not be reached.

    ``status_code`` is None for transport-level failures.
    """

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class ServiceUnavailableError(UpstreamError):
    """Service is temporarily unavailable (5xx)."""

    pass


class PermissionDeniedError(ServiceError):
    """Caller is not allowed to run a privileged operation."""

    def __init__(self, message: str, authenticated: bool = False):
        self.authenticated = authenticated
        super().__init__(message)


class InvalidResponseError(ServiceError):
    """Upstream body could not be parsed."""

    pass
