"""
Custom exceptions for the IG client.

Provides typed exceptions so callers can tell recoverable failures
(expired credentials, remote rate limiting) from terminal ones.
"""

from typing import Optional, Any


class IGError(Exception):
    """Base exception for all IG client errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class APIError(IGError):
    """API request failed with an unclassified status."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response: Optional[Any] = None):
        super().__init__(message, {"status_code": status_code, "response": response})
        self.status_code = status_code
        self.response = response


class TransportError(APIError):
    """Network-level failure (connection refused, reset, DNS)."""
    pass


class TimeoutError(TransportError):
    """Request timed out."""
    pass


class AuthenticationError(IGError):
    """Login, account switch or token refresh failed."""
    pass


class UnauthorizedError(AuthenticationError):
    """Credentials could not be renewed; the session is unusable."""
    pass


class CredentialsExpiredError(IGError):
    """Remote rejected the request because the access token expired."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message, {"endpoint": endpoint})
        self.endpoint = endpoint


class RateLimitError(IGError):
    """Rate limit exceeded (remote allowance or local admission timeout)."""

    def __init__(self, message: str, endpoint: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, {"endpoint": endpoint, "retry_after": retry_after})
        self.endpoint = endpoint
        self.retry_after = retry_after


class ValidationError(IGError):
    """Caller violated a precondition."""
    pass


class OperationCancelledError(IGError):
    """Operation aborted by an external cancellation signal."""
    pass


class MarketDataError(IGError):
    """Market data unavailable or malformed."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message, {"node_id": node_id})
        self.node_id = node_id
