"""
Authentication handler for the IG REST gateway.

Handles v2 (CST / X-SECURITY-TOKEN) and v3 (OAuth) sessions: login,
account switch, token refresh and logout. Every round trip waits for
rate-limiter admission; nothing here retries.
"""

from typing import Optional, Any
import logging

from ..api.base import BaseAPIClient
from ..config import IGSettings
from ..exceptions import (
    APIError,
    AuthenticationError,
    CredentialsExpiredError,
    UnauthorizedError,
    ValidationError
)
from ..models import (
    Session,
    CSTAuth,
    OAuthAuth,
    ApiVersion,
    AccountSwitchResponse,
    utcnow
)
from ..utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SESSION_PATH = "session"
REFRESH_PATH = "session/refresh-token"


class Authenticator:
    """
    Produces and transitions Session values.

    Depends only on the HTTP transport and (optionally) the shared rate
    limiter.
    """

    def __init__(
        self,
        transport: BaseAPIClient,
        settings: IGSettings,
        rate_limiter: Optional[RateLimiter] = None
    ):
        """
        Initialize authenticator.

        Args:
            transport: HTTP client
            settings: Credentials and protocol selection
            rate_limiter: Shared limiter every round trip waits on
        """
        self.transport = transport
        self.settings = settings
        self.rate_limiter = rate_limiter

    @property
    def api_version(self) -> ApiVersion:
        """Configured protocol (v3 when unset)."""
        return ApiVersion(self.settings.api_version or 3)

    def _admit(self) -> None:
        if self.rate_limiter:
            self.rate_limiter.wait_for_admission()

    def _credentials(self) -> dict[str, Any]:
        if not self.settings.username or not self.settings.password:
            raise ValidationError("Username and password are required to log in")
        return {
            "identifier": self.settings.username,
            "password": self.settings.password,
        }

    def _post_session(self, version: int, body: dict[str, Any]):
        """POST /session, returning (response, parsed body)."""
        self._admit()
        response = self.transport.send(
            "POST",
            SESSION_PATH,
            headers=self.transport.build_headers(None, version),
            body=body
        )
        try:
            data = self.transport.classify_response(response, "POST", SESSION_PATH)
        except CredentialsExpiredError as e:
            raise AuthenticationError(f"Login rejected: {e.message}") from e
        return response, data

    # ========== Login ==========

    def login(self) -> Session:
        """
        Log in with the configured protocol.

        Returns:
            New session

        Raises:
            AuthenticationError: Bad credentials or malformed response
        """
        if self.api_version == ApiVersion.V2:
            return self.login_v2()
        return self.login_v3()

    def login_v2(self) -> Session:
        """
        CST login: tokens arrive in response headers.

        Raises:
            AuthenticationError: Rejected, or CST / X-SECURITY-TOKEN missing
        """
        body = self._credentials()
        body["encryptedPassword"] = False

        response, data = self._post_session(2, body)

        cst = response.headers.get("CST")
        security_token = response.headers.get("X-SECURITY-TOKEN")
        if not cst or not security_token:
            raise AuthenticationError("CST or X-SECURITY-TOKEN header missing from login response")

        account_id = data.get("currentAccountId") or data.get("accountId")
        if not account_id:
            raise AuthenticationError("Login response carries no account id")

        session = Session.from_cst(
            cst=cst,
            security_token=security_token,
            account_id=account_id,
            client_id=str(data.get("clientId") or ""),
            lightstreamer_endpoint=data.get("lightstreamerEndpoint"),
            timezone_offset=data.get("timezoneOffset"),
        )

        logger.info(f"Logged in (v2) to account {account_id}")
        return session

    def login_v3(self) -> Session:
        """
        OAuth login: tokens arrive in the response body.

        Raises:
            AuthenticationError: Rejected, or oauthToken missing
        """
        issued_at = utcnow()
        _, data = self._post_session(3, self._credentials())

        token_data = data.get("oauthToken")
        if not token_data or not token_data.get("access_token"):
            raise AuthenticationError("oauthToken missing from login response")

        account_id = data.get("accountId")
        if not account_id:
            raise AuthenticationError("Login response carries no account id")

        session = Session.from_oauth(
            OAuthAuth.from_response(token_data, issued_at=issued_at),
            account_id=account_id,
            client_id=str(data.get("clientId") or ""),
            lightstreamer_endpoint=data.get("lightstreamerEndpoint"),
            timezone_offset=data.get("timezoneOffset"),
        )

        logger.info(
            f"Logged in (v3) to account {account_id}, "
            f"token expires in {session.seconds_until_expiry()}s"
        )
        return session

    # ========== Session transitions ==========

    def switch_account(
        self,
        session: Session,
        account_id: str,
        set_as_default: Optional[bool] = None
    ) -> Session:
        """
        Bind a CST session to another account.

        Args:
            session: Current session
            account_id: Target account
            set_as_default: Also make it the default account

        Returns:
            Session bound to account_id (the same value when already bound)

        Raises:
            ValidationError: OAuth session or empty account id
            AuthenticationError: Switch rejected
        """
        if not account_id:
            raise ValidationError("account_id must not be empty")

        if session.account_id == account_id:
            logger.debug(f"Already on account {account_id}, switch skipped")
            return session

        if not session.is_cst_auth():
            raise ValidationError(
                "Account switching requires a v2 (CST) session; "
                "OAuth sessions select the account per request"
            )

        body: dict[str, Any] = {"accountId": account_id}
        if set_as_default is not None:
            body["defaultAccount"] = set_as_default

        self._admit()
        response = self.transport.send(
            "PUT",
            SESSION_PATH,
            headers=self.transport.build_headers(session, 1),
            body=body
        )
        try:
            data = self.transport.classify_response(response, "PUT", SESSION_PATH)
        except CredentialsExpiredError as e:
            raise AuthenticationError(f"Account switch rejected: {e.message}") from e
        except APIError as e:
            raise AuthenticationError(
                f"Account switch to {account_id} failed: {e.message}",
                e.details
            ) from e

        details = AccountSwitchResponse.model_validate(data)

        # Tokens may rotate on switch
        cst = response.headers.get("CST")
        security_token = response.headers.get("X-SECURITY-TOKEN")
        new_auth = None
        if cst and security_token:
            new_auth = CSTAuth(cst=cst, security_token=security_token)

        logger.info(
            f"Switched account {session.account_id} -> {account_id} "
            f"(dealing_enabled={details.dealing_enabled}, tokens_rotated={new_auth is not None})"
        )
        return session.with_account(account_id, auth=new_auth)

    def refresh(self, session: Session) -> Session:
        """
        Exchange the refresh token for a new OAuth token.

        Args:
            session: OAuth session

        Returns:
            Session carrying the new token, same account

        Raises:
            ValidationError: CST session
            UnauthorizedError: Refresh token rejected
        """
        if not session.is_oauth():
            raise ValidationError("Only OAuth (v3) sessions can be refreshed")

        issued_at = utcnow()
        self._admit()
        response = self.transport.send(
            "POST",
            REFRESH_PATH,
            headers=self.transport.build_headers(None, 1),
            body={"refresh_token": session.auth.refresh_token}
        )
        try:
            data = self.transport.classify_response(response, "POST", REFRESH_PATH)
        except (AuthenticationError, CredentialsExpiredError) as e:
            raise UnauthorizedError(f"Refresh token rejected: {e.message}") from e
        except APIError as e:
            if e.status_code == 400:
                raise UnauthorizedError(f"Refresh token rejected: {e.message}") from e
            raise

        if not data.get("access_token"):
            raise UnauthorizedError("Refresh response carries no access token")

        token = OAuthAuth.from_response(data, issued_at=issued_at)
        logger.info(f"OAuth token refreshed, expires in {token.expires_in}s")
        return session.with_oauth(token)

    def _rebind(self, session: Session, account_id: str) -> Session:
        """Point a fresh session back at a previously selected account."""
        if session.account_id == account_id:
            return session
        if session.is_cst_auth():
            return self.switch_account(session, account_id)
        # OAuth selects the account with IG-ACCOUNT-ID on each request
        return session.with_account(account_id)

    def renew(self, session: Session) -> Session:
        """
        Renew credentials while keeping protocol and account.

        OAuth sessions are refreshed; CST sessions log in again.

        Raises:
            AuthenticationError: Renewal failed
        """
        if session.is_oauth():
            return self.refresh(session)

        fresh = self.login_v2()
        return self._rebind(fresh, session.account_id)

    def relogin(self, session: Session, margin: Optional[float] = None) -> Session:
        """
        Log in again if the session is close to expiry.

        Args:
            session: Current session
            margin: Seconds before expiry (default: settings.relogin_margin_seconds)

        Returns:
            The session unchanged, or a fresh one on the same account
        """
        if margin is None:
            margin = self.settings.relogin_margin_seconds

        if not session.is_expired(margin):
            return session

        logger.info(
            f"Session expires in {session.seconds_until_expiry()}s, logging in again"
        )
        fresh = self.login_v3() if session.is_oauth() else self.login_v2()
        return self._rebind(fresh, session.account_id)

    def login_and_switch_account(
        self,
        account_id: str,
        set_as_default: Optional[bool] = None
    ) -> Session:
        """
        Log in, then switch to account_id if it is not the default.

        Raises:
            ValidationError: Target differs and the configured protocol is OAuth
        """
        session = self.login()
        return self.switch_account(session, account_id, set_as_default)

    def fetch_session_tokens(self, session: Session) -> CSTAuth:
        """
        Obtain a CST pair for an OAuth session (streaming needs one).

        Returns:
            CST credentials from GET /session?fetchSessionTokens=true
        """
        if session.is_cst_auth():
            return session.auth

        self._admit()
        response = self.transport.send(
            "GET",
            SESSION_PATH,
            headers=self.transport.build_headers(session, 1),
            params={"fetchSessionTokens": "true"}
        )
        self.transport.classify_response(response, "GET", SESSION_PATH)

        cst = response.headers.get("CST")
        security_token = response.headers.get("X-SECURITY-TOKEN")
        if not cst or not security_token:
            raise AuthenticationError("Session token headers missing from response")
        return CSTAuth(cst=cst, security_token=security_token)

    def logout(self, session: Session) -> None:
        """
        End the session server-side.

        Raises:
            APIError: Logout rejected
        """
        self._admit()
        self.transport.request("DELETE", SESSION_PATH, session, version=1)
        logger.info(f"Logged out of account {session.account_id}")
