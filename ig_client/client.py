"""
Main IG client.

Unified interface over session management, the resilient request
pipeline and the market hierarchy crawler. Thread-safe: calls sharing
one client are serialized on its session slot.
"""

from typing import Optional, Callable, Dict, Any, TypeVar, Awaitable
import atexit
import logging
import threading
import time

from .config import get_settings, IGSettings
from .models import (
    Session,
    SessionSlot,
    MarketEntry,
    NavigationNode,
    StreamingCredentials
)
from .auth.authenticator import Authenticator
from .api.markets import MarketAPI
from .api.navigation import MarketHierarchyCrawler, CrawlStats
from .utils.rate_limiter import RateLimiter
from .utils.retry import ResilientExecutor, RetryPolicy
from .metrics import get_metrics

logger = logging.getLogger(__name__)

T = TypeVar('T')


class IGClient:
    """
    Main client for IG operations.

    Features:
    - v2 (CST) and v3 (OAuth) sessions
    - Token-bucket rate limiting shared by every call
    - Transparent credential renewal and rate-limit retries
    - Breadth-first market catalog crawl
    - Typed exceptions

    Usage:
        client = IGClient()
        client.login()
        markets = client.crawl_market_hierarchy(max_depth=2)
        data = client.get("accounts")
    """

    def __init__(
        self,
        settings: Optional[IGSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize IG client.

        Args:
            settings: Optional settings (loads from env if not provided)
            rate_limiter: Shared limiter (built from settings if not provided)
            retry_policy: Default policy (built from settings if not provided)
            sleep: Blocking sleep used for rate-limit backoff
        """
        self.settings = settings or get_settings()

        self.metrics = get_metrics(
            enabled=self.settings.enable_metrics,
            port=self.settings.metrics_port
        )

        self.rate_limiter = rate_limiter or RateLimiter.from_settings(self.settings)
        self.market_api = MarketAPI(settings=self.settings)
        self.authenticator = Authenticator(
            transport=self.market_api,
            settings=self.settings,
            rate_limiter=self.rate_limiter
        )
        self.executor = ResilientExecutor(
            authenticator=self.authenticator,
            rate_limiter=self.rate_limiter,
            retry_policy=retry_policy or RetryPolicy.from_settings(self.settings),
            refresh_margin=self.settings.refresh_margin_seconds,
            sleep=sleep
        )
        self.crawler = MarketHierarchyCrawler(
            executor=self.executor,
            market_api=self.market_api,
            max_depth=self.settings.max_crawl_depth
        )

        self.slot = SessionSlot()
        self._closed = False

        atexit.register(self.close)

        logger.info(f"IG client initialized ({self.settings!r})")

    # ========== Session Management ==========

    @property
    def session(self) -> Session:
        """Current session (raises AuthenticationError when logged out)."""
        return self.slot.session

    @property
    def is_logged_in(self) -> bool:
        return not self.slot.is_empty

    def login(self) -> Session:
        """
        Log in and install the session.

        Switches to settings.account_id when configured and different
        from the default account of a v2 session.

        Returns:
            Installed session

        Raises:
            AuthenticationError: Login rejected
        """
        with self.slot.lock:
            session = self.authenticator.login()

            target = self.settings.account_id
            if target and target != session.account_id:
                if session.is_cst_auth():
                    session = self.authenticator.switch_account(session, target)
                else:
                    logger.warning(
                        f"Configured account {target} differs from OAuth default "
                        f"{session.account_id}; use a v2 session to switch"
                    )

            return self.slot.replace(session)

    def switch_account(
        self,
        account_id: str,
        set_as_default: Optional[bool] = None
    ) -> Session:
        """
        Switch the current v2 session to another account.

        Raises:
            ValidationError: OAuth session or empty account id
            AuthenticationError: Not logged in or switch rejected
        """
        with self.slot.lock:
            session = self.authenticator.switch_account(
                self.slot.session, account_id, set_as_default
            )
            return self.slot.replace(session)

    def refresh(self) -> Session:
        """
        Refresh the OAuth token of the current session.

        Raises:
            ValidationError: CST session
            UnauthorizedError: Refresh token rejected
        """
        with self.slot.lock:
            return self.slot.replace(self.authenticator.refresh(self.slot.session))

    def relogin(self, margin: Optional[float] = None) -> Session:
        """Log in again if the session expires within margin seconds."""
        with self.slot.lock:
            return self.slot.replace(self.authenticator.relogin(self.slot.session, margin))

    def logout(self) -> None:
        """End the session server-side and drop it locally."""
        with self.slot.lock:
            if self.slot.is_empty:
                return
            try:
                self.authenticator.logout(self.slot.session)
            finally:
                self.slot.clear()

    # ========== Resilient Execution ==========

    def execute_with_resilience(
        self,
        operation: Callable[[Session], T],
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> T:
        """
        Run operation(session) through the request pipeline.

        Args:
            operation: Callable receiving the current session
            retry_policy: Override for the default policy
            cancel_event: Aborts waits and further attempts

        Returns:
            Operation result
        """
        with self.slot.lock:
            return self.executor.execute(
                self.slot,
                operation,
                retry_policy=retry_policy,
                cancel_event=cancel_event
            )

    async def execute_with_resilience_async(
        self,
        operation: Callable[[Session], Awaitable[T]],
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> T:
        """Async variant of execute_with_resilience (not serialized on the slot)."""
        return await self.executor.execute_async(
            self.slot,
            operation,
            retry_policy=retry_policy,
            cancel_event=cancel_event
        )

    # ========== Generic REST ==========

    def get(self, path: str, version: int = 1,
            params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Authenticated GET through the pipeline."""
        return self.execute_with_resilience(
            lambda session: self.market_api.get(path, session, version, params=params)
        )

    def post(self, path: str, body: Optional[Dict[str, Any]] = None,
             version: int = 1) -> Dict[str, Any]:
        """Authenticated POST through the pipeline."""
        return self.execute_with_resilience(
            lambda session: self.market_api.post(path, session, version, body=body)
        )

    def put(self, path: str, body: Optional[Dict[str, Any]] = None,
            version: int = 1) -> Dict[str, Any]:
        """Authenticated PUT through the pipeline."""
        return self.execute_with_resilience(
            lambda session: self.market_api.put(path, session, version, body=body)
        )

    def delete(self, path: str, version: int = 1) -> Dict[str, Any]:
        """Authenticated DELETE through the pipeline."""
        return self.execute_with_resilience(
            lambda session: self.market_api.delete(path, session, version)
        )

    # ========== Market Data Operations ==========

    def get_market_navigation(self, node_id: Optional[str] = None) -> NavigationNode:
        """
        Fetch one navigation node (None = top level).

        Returns:
            Node with child references and markets
        """
        return self.execute_with_resilience(
            lambda session: self.market_api.get_navigation_node(session, node_id)
        )

    def crawl_market_hierarchy(
        self,
        max_depth: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> list[MarketEntry]:
        """
        Collect every market reachable within max_depth levels.

        Args:
            max_depth: Depth bound (default: settings.max_crawl_depth)
            cancel_event: Aborts the crawl

        Returns:
            Unique markets in breadth-first, first-seen order
        """
        with self.slot.lock:
            return self.crawler.crawl(self.slot, max_depth=max_depth, cancel_event=cancel_event)

    @property
    def last_crawl_stats(self) -> Optional[CrawlStats]:
        return self.crawler.last_stats

    # ========== Streaming ==========

    def streaming_credentials(self) -> StreamingCredentials:
        """
        Connection parameters for the streaming transport.

        OAuth sessions fetch a CST pair first.

        Raises:
            ValidationError: Session has no streaming endpoint
        """
        with self.slot.lock:
            session = self.slot.session
            auth = self.authenticator.fetch_session_tokens(session)
            return StreamingCredentials.from_cst(
                endpoint=session.lightstreamer_endpoint,
                account_id=session.account_id,
                cst=auth.cst,
                security_token=auth.security_token
            )

    # ========== Utility Methods ==========

    def get_rate_limiter_stats(self) -> dict:
        """Get rate limiter statistics."""
        return self.rate_limiter.get_stats()

    def health_check(self) -> Dict[str, Any]:
        """
        Local health snapshot (no network).

        Returns:
            Dict with session state and rate limiter stats
        """
        with self.slot.lock:
            if self.slot.is_empty:
                session_info: Dict[str, Any] = {"logged_in": False}
            else:
                session = self.slot.session
                session_info = {
                    "logged_in": True,
                    "account_id": session.account_id,
                    "api_version": int(session.api_version),
                    "seconds_until_expiry": session.seconds_until_expiry(),
                }

        return {
            "status": "healthy" if session_info["logged_in"] else "unauthenticated",
            "session": session_info,
            "rate_limiter": self.get_rate_limiter_stats(),
            "timestamp": time.time()
        }

    def close(self) -> None:
        """Close client and release the connection pool."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing IG client...")
        self.market_api.close()
        atexit.unregister(self.close)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
