"""
IG Client Library

Thread-safe client for the IG REST trading API.
Handles v2 (CST) and v3 (OAuth) sessions, rate limiting, transparent
credential renewal and market hierarchy discovery.
"""

from .client import IGClient
from .config import IGSettings, get_settings
from .models import (
    ApiVersion,
    CSTAuth,
    OAuthAuth,
    Session,
    SessionSlot,
    MarketEntry,
    NavigationNode,
    NavigationNodeRef,
    StreamingCredentials,
    AccountSwitchResponse,
)
from .exceptions import (
    IGError,
    APIError,
    TransportError,
    TimeoutError,
    AuthenticationError,
    UnauthorizedError,
    CredentialsExpiredError,
    RateLimitError,
    ValidationError,
    OperationCancelledError,
    MarketDataError,
)
from .auth.authenticator import Authenticator
from .api.navigation import MarketHierarchyCrawler, CrawlStats
from .utils.rate_limiter import RateLimiter
from .utils.retry import RetryPolicy, ResilientExecutor

__version__ = "0.3.0"

__all__ = [
    # Main client
    "IGClient",
    "IGSettings",
    "get_settings",

    # Types
    "ApiVersion",
    "CSTAuth",
    "OAuthAuth",
    "Session",
    "SessionSlot",
    "MarketEntry",
    "NavigationNode",
    "NavigationNodeRef",
    "StreamingCredentials",
    "AccountSwitchResponse",

    # Components
    "Authenticator",
    "MarketHierarchyCrawler",
    "CrawlStats",
    "RateLimiter",
    "RetryPolicy",
    "ResilientExecutor",

    # Exceptions
    "IGError",
    "APIError",
    "TransportError",
    "TimeoutError",
    "AuthenticationError",
    "UnauthorizedError",
    "CredentialsExpiredError",
    "RateLimitError",
    "ValidationError",
    "OperationCancelledError",
    "MarketDataError",
]
