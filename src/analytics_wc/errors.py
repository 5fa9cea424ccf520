"""
Error taxonomy for ingestion and the admin gateway.

Every failure that reaches a caller is an AnalyticsError subclass. The
message is safe to return verbatim; internals are only logged server-side.
"""


class AnalyticsError(Exception):
    """Base error carrying an HTTP status and a caller-safe message."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, headers: dict[str, str] | None = None):
        self.message = message or self.message
        self.headers: dict[str, str] = dict(headers or {})
        super().__init__(self.message)


class ValidationError(AnalyticsError):
    """Malformed or missing input. User-correctable."""
    status_code = 400
    message = "Invalid request"


class IdentityError(ValidationError):
    """The caller's network address could not be determined."""
    message = "Could not determine IP address"


class MissingMetricError(ValidationError):
    message = "Metric parameter required"


class UnknownMetricError(ValidationError):
    message = "Invalid metric"


class AuthError(AnalyticsError):
    """Missing or invalid bearer credential. Raised before any side effect."""
    status_code = 401
    message = "Unauthorized"


class RateLimitError(AnalyticsError):
    """Caller throttled. Retry after the window elapses."""
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(self, retry_after: int = 60, message: str | None = None):
        super().__init__(message, headers={"Retry-After": str(retry_after)})


class UpstreamUnavailable(AnalyticsError):
    """External store, identity provider or analytics API unreachable or misconfigured."""
    status_code = 503
    message = "Upstream service unavailable"


class StorageError(UpstreamUnavailable):
    """A read or write against the analytics store failed."""
    message = "Storage failure"


class InternalError(AnalyticsError):
    status_code = 500
    message = "Internal server error"
