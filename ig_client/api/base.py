"""
Base HTTP client with robust error handling.

Owns the pooled requests.Session, builds protocol-specific auth headers and
maps raw responses onto the exception taxonomy.

Bodies are serialized and parsed with orjson.
"""

import orjson
import requests
import time
import threading
from typing import Optional, Any, Dict
from requests.adapters import HTTPAdapter
import logging

from ..config import IGSettings, CREDENTIALS_EXPIRED_CODES, RATE_LIMIT_CODES
from ..exceptions import (
    APIError,
    TransportError,
    TimeoutError,
    RateLimitError,
    AuthenticationError,
    CredentialsExpiredError
)
from ..metrics import get_metrics
from ..models import Session, CSTAuth

logger = logging.getLogger(__name__)


class BaseAPIClient:
    """
    HTTP transport for the IG REST gateway.

    Thread-safe for concurrent use. Performs no retries and no rate
    limiting of its own; both belong to the request pipeline.
    """

    def __init__(self, settings: IGSettings, base_url: Optional[str] = None):
        """
        Initialize base API client.

        Args:
            settings: Client settings
            base_url: API base URL (default: settings.rest_base_url)
        """
        self.settings = settings
        self.base_url = (base_url or settings.rest_base_url).rstrip("/")

        # Create session with connection pooling
        self.session = requests.Session()

        adapter = HTTPAdapter(
            pool_connections=settings.pool_connections,
            pool_maxsize=settings.pool_maxsize,
            max_retries=0,  # Retries are handled by the pipeline
            pool_block=False  # Fail fast when pool exhausted
        )
        self.session.mount('https://', adapter)
        self.session.mount('http://', adapter)

        self.session.headers.update({
            "Content-Type": "application/json; charset=UTF-8",
            "Accept": "application/json; charset=UTF-8",
            "User-Agent": settings.user_agent,
            "Connection": "keep-alive",
        })

        # Set timeouts
        self.timeout = (settings.connect_timeout, settings.request_timeout)

        # Request ID tracking
        self._request_counter = 0
        self._counter_lock = threading.Lock()

    def _url(self, path: str) -> str:
        # urljoin would drop the /gateway/deal prefix for absolute paths
        return f"{self.base_url}/{path.lstrip('/')}"

    def build_headers(self, session: Optional[Session], version: int) -> Dict[str, str]:
        """
        Build request headers for a protocol version.

        Args:
            session: Authenticated session (None for login)
            version: Value of the Version header

        Returns:
            Header dict: API key and version, plus CST/X-SECURITY-TOKEN for
            v2 sessions or Authorization/IG-ACCOUNT-ID for v3 sessions
        """
        headers = {
            "X-IG-API-KEY": self.settings.api_key,
            "Version": str(version),
        }

        if session is None:
            return headers

        if isinstance(session.auth, CSTAuth):
            headers["CST"] = session.auth.cst
            headers["X-SECURITY-TOKEN"] = session.auth.security_token
        else:
            headers["Authorization"] = f"{session.auth.token_type} {session.auth.access_token}"
            headers["IG-ACCOUNT-ID"] = session.account_id

        return headers

    def send(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> requests.Response:
        """
        Perform one HTTP round trip.

        Args:
            method: HTTP method
            path: Request path relative to the base URL
            headers: Additional headers
            body: JSON body
            params: Query parameters

        Returns:
            Raw response (any status)

        Raises:
            TimeoutError: On timeout
            TransportError: On connection failure
        """
        url = self._url(path)

        with self._counter_lock:
            self._request_counter += 1
            request_id = f"{method}:{path}:{self._request_counter}"

        request_headers = self.session.headers.copy()
        if headers:
            request_headers.update(headers)

        if self.settings.log_requests:
            logger.debug(f"[{request_id}] {method} {url} params={params}")

        data = orjson.dumps(body) if body is not None else None
        start = time.time()

        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=request_headers,
                params=params,
                data=data,
                timeout=self.timeout
            )

        except requests.exceptions.Timeout as e:
            logger.error(f"Request timeout: {method} {url}")
            get_metrics().track_api_request(method, path, "timeout")
            raise TimeoutError(f"Request timeout: {e}") from e

        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error: {method} {url}")
            get_metrics().track_api_request(method, path, "connection_error")
            raise TransportError(f"Connection error: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Unexpected transport error: {method} {url}: {e}")
            raise TransportError(f"Transport error: {e}") from e

        metrics = get_metrics()
        metrics.track_api_latency(method, path, time.time() - start)
        metrics.track_api_request(method, path, str(response.status_code))

        if self.settings.log_requests:
            logger.debug(f"[{request_id}] -> {response.status_code}")

        return response

    @staticmethod
    def _error_code(response: requests.Response) -> tuple[Optional[Any], str]:
        """Parsed error body (if JSON) and a string to match codes against."""
        try:
            error_data = orjson.loads(response.content)
        except orjson.JSONDecodeError:
            return None, response.text or ""

        if isinstance(error_data, dict) and error_data.get("errorCode"):
            return error_data, str(error_data["errorCode"])
        return error_data, response.text or ""

    def classify_response(
        self,
        response: requests.Response,
        method: str = "",
        path: str = ""
    ) -> Dict[str, Any]:
        """
        Map a raw response onto a result or a typed exception.

        Args:
            response: Raw response
            method: HTTP method (for messages)
            path: Request path (for messages)

        Returns:
            Parsed JSON body ({} for an empty body)

        Raises:
            CredentialsExpiredError: 401 carrying a token-invalid code
            RateLimitError: 403 carrying an allowance code, or any 429
            AuthenticationError: Any other 401/403
            APIError: Any other non-2xx, or an unparseable 2xx body
        """
        status = response.status_code

        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                result = orjson.loads(response.content)
            except orjson.JSONDecodeError as e:
                logger.error(f"Invalid JSON response: {response.text[:200]}")
                raise APIError(f"Invalid JSON response: {e}", status_code=status) from e
            return result if result is not None else {}

        error_data, code = self._error_code(response)
        error_msg = f"{method} {path} failed with {status}: {code[:200]}"

        if status == 401 and any(c in code for c in CREDENTIALS_EXPIRED_CODES):
            raise CredentialsExpiredError(error_msg, endpoint=path)

        if status == 429 or (status == 403 and any(c in code for c in RATE_LIMIT_CODES)):
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_secs = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_secs = None
            raise RateLimitError(error_msg, endpoint=path, retry_after=retry_after_secs)

        if status in (401, 403):
            raise AuthenticationError(error_msg, {"status_code": status, "response": error_data})

        raise APIError(error_msg, status_code=status, response=error_data)

    def request(
        self,
        method: str,
        path: str,
        session: Optional[Session] = None,
        version: int = 1,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Authenticated request: build headers, send, classify.

        Returns:
            Parsed JSON body
        """
        headers = self.build_headers(session, version)
        response = self.send(method, path, headers=headers, body=body, params=params)
        return self.classify_response(response, method, path)

    def get(self, path: str, session: Optional[Session] = None, version: int = 1,
            params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make GET request."""
        return self.request("GET", path, session, version, params=params)

    def post(self, path: str, session: Optional[Session] = None, version: int = 1,
             body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make POST request."""
        return self.request("POST", path, session, version, body=body)

    def put(self, path: str, session: Optional[Session] = None, version: int = 1,
            body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make PUT request."""
        return self.request("PUT", path, session, version, body=body)

    def delete(self, path: str, session: Optional[Session] = None,
               version: int = 1) -> Dict[str, Any]:
        """Make DELETE request."""
        return self.request("DELETE", path, session, version)

    def close(self) -> None:
        """Close session and cleanup resources."""
        self.session.close()
        logger.info("API client session closed")
