"""Utility modules for IG client."""

from .rate_limiter import RateLimiter
from .retry import RetryPolicy, ResilientExecutor
from .structured_logging import CredentialRedactionFilter, StructuredLogger, get_logger

__all__ = [
    "RateLimiter",
    "RetryPolicy",
    "ResilientExecutor",
    "CredentialRedactionFilter",
    "StructuredLogger",
    "get_logger",
]
