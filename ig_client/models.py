"""
Type definitions for the IG client.

Uses Pydantic for runtime validation and type safety.
Sessions are immutable: every credential transition yields a new value.
"""

import threading
from enum import Enum
from typing import Optional, Any, Union, Literal, Annotated
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import AuthenticationError, ValidationError


# Safety window used when no explicit margin is given
DEFAULT_EXPIRY_MARGIN = 60.0

# CST/X-SECURITY-TOKEN pairs stay valid for 6 hours of inactivity
CST_SESSION_LIFETIME = timedelta(hours=6)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiVersion(int, Enum):
    """Session protocol version."""
    V2 = 2  # CST / X-SECURITY-TOKEN
    V3 = 3  # OAuth bearer tokens


# ========== Session ==========

class CSTAuth(BaseModel):
    """API v2 credentials: both headers must accompany every request."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["cst"] = "cst"
    cst: str = Field(..., min_length=1, repr=False)
    security_token: str = Field(..., min_length=1, repr=False)


class OAuthAuth(BaseModel):
    """API v3 credentials: bearer access token plus single-use refresh token."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["oauth"] = "oauth"
    access_token: str = Field(..., min_length=1, repr=False)
    refresh_token: str = Field(..., repr=False)
    token_type: str = "Bearer"
    scope: str = ""
    expires_in: int = Field(..., ge=0, description="Lifetime in seconds")
    issued_at: datetime = Field(default_factory=utcnow)

    @field_validator("issued_at")
    @classmethod
    def validate_issued_at(cls, v: datetime) -> datetime:
        """Normalise to aware UTC."""
        return _as_utc(v)

    @property
    def expires_at(self) -> datetime:
        """Absolute expiry of the access token."""
        return self.issued_at + timedelta(seconds=self.expires_in)

    @classmethod
    def from_response(cls, data: dict[str, Any],
                      issued_at: Optional[datetime] = None) -> "OAuthAuth":
        """
        Build from an `oauthToken` payload.

        The remote sends `expires_in` as a string ("60").
        """
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
            expires_in=int(data.get("expires_in") or 0),
            issued_at=issued_at or utcnow(),
        )


SessionAuth = Annotated[Union[CSTAuth, OAuthAuth], Field(discriminator="kind")]


class Session(BaseModel):
    """
    One authenticated context.

    Holds exactly one auth payload (CST pair or OAuth tokens), the bound
    account and the absolute expiry. Frozen: refresh and account switch
    produce new instances.
    """
    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., min_length=1)
    client_id: str = ""
    auth: SessionAuth
    expires_at: datetime
    lightstreamer_endpoint: Optional[str] = None
    timezone_offset: Optional[int] = None

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime) -> datetime:
        """Normalise to aware UTC."""
        return _as_utc(v)

    # ----- constructors -----

    @classmethod
    def from_cst(
        cls,
        cst: str,
        security_token: str,
        account_id: str,
        client_id: str = "",
        lightstreamer_endpoint: Optional[str] = None,
        timezone_offset: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> "Session":
        """Create a v2 session valid for the CST idle window."""
        now = _as_utc(now) if now else utcnow()
        return cls(
            account_id=account_id,
            client_id=client_id,
            auth=CSTAuth(cst=cst, security_token=security_token),
            expires_at=now + CST_SESSION_LIFETIME,
            lightstreamer_endpoint=lightstreamer_endpoint,
            timezone_offset=timezone_offset,
        )

    @classmethod
    def from_oauth(
        cls,
        token: OAuthAuth,
        account_id: str,
        client_id: str = "",
        lightstreamer_endpoint: Optional[str] = None,
        timezone_offset: Optional[int] = None
    ) -> "Session":
        """Create a v3 session expiring with its access token."""
        return cls(
            account_id=account_id,
            client_id=client_id,
            auth=token,
            expires_at=token.expires_at,
            lightstreamer_endpoint=lightstreamer_endpoint,
            timezone_offset=timezone_offset,
        )

    # ----- transitions -----

    def with_account(
        self,
        account_id: str,
        auth: Optional[CSTAuth] = None,
        now: Optional[datetime] = None
    ) -> "Session":
        """
        Copy bound to another account.

        Args:
            account_id: Target account
            auth: Rotated CST pair; restarts the idle window when given
            now: Clock override

        Returns:
            New session
        """
        expires_at = self.expires_at
        if auth is not None:
            expires_at = (_as_utc(now) if now else utcnow()) + CST_SESSION_LIFETIME
        return Session(
            account_id=account_id,
            client_id=self.client_id,
            auth=auth or self.auth,
            expires_at=expires_at,
            lightstreamer_endpoint=self.lightstreamer_endpoint,
            timezone_offset=self.timezone_offset,
        )

    def with_oauth(self, token: OAuthAuth) -> "Session":
        """Copy carrying a refreshed OAuth token."""
        return Session(
            account_id=self.account_id,
            client_id=self.client_id,
            auth=token,
            expires_at=token.expires_at,
            lightstreamer_endpoint=self.lightstreamer_endpoint,
            timezone_offset=self.timezone_offset,
        )

    # ----- predicates -----

    def is_oauth(self) -> bool:
        """True for v3 (bearer) sessions."""
        return isinstance(self.auth, OAuthAuth)

    def is_cst_auth(self) -> bool:
        """True for v2 (CST/X-SECURITY-TOKEN) sessions."""
        return isinstance(self.auth, CSTAuth)

    @property
    def api_version(self) -> ApiVersion:
        return ApiVersion.V3 if self.is_oauth() else ApiVersion.V2

    def is_expired(self, margin: Optional[float] = None,
                   now: Optional[datetime] = None) -> bool:
        """
        Check whether the session is expired or will be within `margin`.

        Args:
            margin: Safety window in seconds (default: 60)
            now: Clock override

        Returns:
            True iff now + margin >= expires_at
        """
        if margin is None:
            margin = DEFAULT_EXPIRY_MARGIN
        now = _as_utc(now) if now else utcnow()
        return now + timedelta(seconds=margin) >= self.expires_at

    def needs_refresh(self, margin: Optional[float] = None,
                      now: Optional[datetime] = None) -> bool:
        """Alias of is_expired."""
        return self.is_expired(margin, now)

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> int:
        """Seconds left before expiry; negative once expired."""
        now = _as_utc(now) if now else utcnow()
        return int((self.expires_at - now).total_seconds())


class SessionSlot:
    """
    Thread-safe holder of the current session.

    The installed value is swapped wholesale; callers that share one slot
    across threads serialize their pipeline calls with `lock`.
    """

    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self.lock = threading.RLock()  # Reentrant lock

    @property
    def session(self) -> Session:
        """
        Current session.

        Raises:
            AuthenticationError: If nothing is installed
        """
        with self.lock:
            if self._session is None:
                raise AuthenticationError("Not logged in: no session installed")
            return self._session

    @property
    def is_empty(self) -> bool:
        with self.lock:
            return self._session is None

    def replace(self, session: Session) -> Session:
        """
        Install a new session, dropping the old one.

        Returns:
            The installed session
        """
        with self.lock:
            self._session = session
            return session

    def clear(self) -> None:
        """Drop the current session."""
        with self.lock:
            self._session = None

    def __repr__(self) -> str:
        with self.lock:
            if self._session is None:
                return "SessionSlot(empty)"
            return (
                f"SessionSlot(account_id={self._session.account_id}, "
                f"api_version={int(self._session.api_version)})"
            )


class StreamingCredentials(BaseModel):
    """Connection parameters handed to the streaming transport."""
    model_config = ConfigDict(frozen=True)

    endpoint: str
    account_id: str
    password: str = Field(..., repr=False)

    @classmethod
    def from_cst(cls, endpoint: Optional[str], account_id: str,
                 cst: str, security_token: str) -> "StreamingCredentials":
        """Streaming password format is CST-<cst>|XST-<token>."""
        if not endpoint:
            raise ValidationError("Session has no streaming endpoint")
        return cls(
            endpoint=endpoint,
            account_id=account_id,
            password=f"CST-{cst}|XST-{security_token}",
        )


class AccountSwitchResponse(BaseModel):
    """Body of PUT /session."""
    dealing_enabled: Optional[bool] = Field(None, alias="dealingEnabled")
    has_active_demo_accounts: Optional[bool] = Field(None, alias="hasActiveDemoAccounts")
    has_active_live_accounts: Optional[bool] = Field(None, alias="hasActiveLiveAccounts")
    trailing_stops_enabled: Optional[bool] = Field(None, alias="trailingStopsEnabled")

    model_config = ConfigDict(populate_by_name=True)


# ========== Market navigation ==========

class MarketEntry(BaseModel):
    """Leaf market attached to a navigation node."""
    epic: str = Field(..., min_length=1)
    instrument_name: str = Field(default="", alias="instrumentName")
    instrument_type: Optional[str] = Field(None, alias="instrumentType")
    expiry: Optional[str] = None
    market_status: Optional[str] = Field(None, alias="marketStatus")

    # Quote fields
    bid: Optional[Decimal] = None
    offer: Optional[Decimal] = None
    high_limit_price: Optional[Decimal] = Field(None, alias="highLimitPrice")
    low_limit_price: Optional[Decimal] = Field(None, alias="lowLimitPrice")
    net_change: Optional[Decimal] = Field(None, alias="netChange")
    percentage_change: Optional[Decimal] = Field(None, alias="percentageChange")
    update_time: Optional[str] = Field(None, alias="updateTime")
    update_time_utc: Optional[str] = Field(None, alias="updateTimeUTC")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator(
        "bid", "offer", "high_limit_price", "low_limit_price",
        "net_change", "percentage_change",
        mode="before"
    )
    @classmethod
    def validate_numeric(cls, v: Any) -> Optional[Decimal]:
        """Convert quote fields to Decimal without float noise."""
        if v is None or isinstance(v, Decimal):
            return v
        elif isinstance(v, str):
            return Decimal(v)
        elif isinstance(v, (int, float)):
            return Decimal(str(v))
        else:
            raise ValueError(f"Cannot convert {type(v)} to Decimal")

    @property
    def symbol(self) -> str:
        """Third component of the epic (IX.D.FTSE.DAILY.IP -> FTSE)."""
        parts = self.epic.split(".")
        return parts[2] if len(parts) > 2 else ""


class NavigationNodeRef(BaseModel):
    """Child reference inside a navigation response."""
    id: str
    name: str = ""


class MarketNavigationResponse(BaseModel):
    """Raw body of GET /marketnavigation[/{id}]."""
    nodes: list[NavigationNodeRef] = Field(default_factory=list)
    markets: list[MarketEntry] = Field(default_factory=list)

    @field_validator("nodes", "markets", mode="before")
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        """The remote sends null instead of an empty list."""
        return [] if v is None else v


class NavigationNode(BaseModel):
    """One catalog node: child references plus directly attached markets."""
    id: Optional[str] = Field(None, description="None for the root")
    name: str = ""
    children: list[NavigationNodeRef] = Field(default_factory=list)
    markets: list[MarketEntry] = Field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.id is None
