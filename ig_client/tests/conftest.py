"""Shared fixtures for IG client tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import orjson
import pytest
import requests

from ig_client.config import IGSettings
from ig_client.models import Session, OAuthAuth


def make_response(
    status: int,
    body: Optional[Any] = None,
    headers: Optional[dict[str, str]] = None,
    raw: Optional[bytes] = None
) -> requests.Response:
    """Build a requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    if raw is not None:
        response._content = raw
    else:
        response._content = orjson.dumps(body) if body is not None else b""
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def response_factory():
    """Factory for canned HTTP responses."""
    return make_response


@pytest.fixture
def fake_clock():
    """Instant-sleep monotonic clock."""
    return FakeClock()


@pytest.fixture
def settings():
    """Settings isolated from the environment and .env files."""
    return IGSettings(
        _env_file=None,
        username="demo-user",
        password="demo-pass",
        api_key="demo-api-key",
        account_id=None,
        api_version=2,
        rest_base_url="https://demo-api.ig.com/gateway/deal",
        enable_rate_limiting=False,
        retry_delay_secs=0.0,
    )


@pytest.fixture
def cst_session():
    """v2 session with a full idle window ahead."""
    return Session.from_cst(
        cst="cst-token-1",
        security_token="xst-token-1",
        account_id="ACC1",
        client_id="CLIENT1",
        lightstreamer_endpoint="https://demo-apd.marketdatasystems.com",
    )


@pytest.fixture
def oauth_session():
    """v3 session whose token is valid for an hour."""
    token = OAuthAuth(
        access_token="access-1",
        refresh_token="refresh-1",
        scope="profile",
        expires_in=3600,
        issued_at=datetime.now(timezone.utc),
    )
    return Session.from_oauth(
        token,
        account_id="ACC1",
        client_id="CLIENT1",
        lightstreamer_endpoint="https://demo-apd.marketdatasystems.com",
    )


@pytest.fixture
def expiring_oauth_session():
    """v3 session already inside the default refresh margin."""
    token = OAuthAuth(
        access_token="access-old",
        refresh_token="refresh-old",
        expires_in=5,
        issued_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
    return Session.from_oauth(token, account_id="ACC1", client_id="CLIENT1")
