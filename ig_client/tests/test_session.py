"""Tests for Session and SessionSlot."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from ig_client.exceptions import AuthenticationError
from ig_client.models import (
    ApiVersion,
    CSTAuth,
    OAuthAuth,
    Session,
    SessionSlot,
    CST_SESSION_LIFETIME,
)

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_oauth(expires_in: int = 60, issued_at: datetime = NOW) -> OAuthAuth:
    return OAuthAuth(
        access_token="access",
        refresh_token="refresh",
        expires_in=expires_in,
        issued_at=issued_at,
    )


class TestExpiry:
    """Expiry predicates."""

    def test_expired_when_inside_margin(self):
        session = Session.from_oauth(make_oauth(expires_in=30), account_id="A")

        assert session.is_expired(margin=60, now=NOW)
        assert not session.is_expired(margin=10, now=NOW)

    def test_default_margin_is_sixty_seconds(self):
        session = Session.from_oauth(make_oauth(expires_in=61), account_id="A")

        assert not session.is_expired(now=NOW)
        assert session.is_expired(now=NOW + timedelta(seconds=1))

    def test_boundary_counts_as_expired(self):
        """now + margin == expires_at is expired."""
        session = Session.from_oauth(make_oauth(expires_in=60), account_id="A")

        assert session.is_expired(margin=60, now=NOW)

    def test_needs_refresh_matches_is_expired(self):
        session = Session.from_oauth(make_oauth(expires_in=100), account_id="A")

        for margin in (0, 50, 100, 150):
            assert session.needs_refresh(margin, now=NOW) == session.is_expired(margin, now=NOW)

    def test_seconds_until_expiry(self):
        session = Session.from_oauth(make_oauth(expires_in=90), account_id="A")

        assert session.seconds_until_expiry(now=NOW) == 90
        assert session.seconds_until_expiry(now=NOW + timedelta(seconds=100)) == -10

    def test_cst_session_lasts_six_hours(self):
        session = Session.from_cst("c", "x", account_id="A", now=NOW)

        assert session.expires_at == NOW + CST_SESSION_LIFETIME
        assert session.seconds_until_expiry(now=NOW) == 6 * 3600

    def test_naive_datetimes_treated_as_utc(self):
        token = make_oauth(expires_in=60, issued_at=NOW.replace(tzinfo=None))
        session = Session.from_oauth(token, account_id="A")

        assert session.expires_at.tzinfo is not None
        assert session.seconds_until_expiry(now=NOW) == 60


class TestAuthKind:
    """Exactly one auth payload per session."""

    def test_oauth_session(self):
        session = Session.from_oauth(make_oauth(), account_id="A")

        assert session.is_oauth()
        assert not session.is_cst_auth()
        assert session.api_version == ApiVersion.V3

    def test_cst_session(self):
        session = Session.from_cst("c", "x", account_id="A")

        assert session.is_cst_auth()
        assert not session.is_oauth()
        assert session.api_version == ApiVersion.V2

    def test_discriminated_union_from_dict(self):
        session = Session.model_validate({
            "account_id": "A",
            "auth": {"kind": "cst", "cst": "c", "security_token": "x"},
            "expires_at": NOW.isoformat(),
        })

        assert isinstance(session.auth, CSTAuth)

    def test_unknown_kind_rejected(self):
        with pytest.raises(PydanticValidationError):
            Session.model_validate({
                "account_id": "A",
                "auth": {"kind": "basic", "user": "u"},
                "expires_at": NOW.isoformat(),
            })

    def test_empty_account_rejected(self):
        with pytest.raises(PydanticValidationError):
            Session.from_cst("c", "x", account_id="")

    def test_session_is_frozen(self):
        session = Session.from_cst("c", "x", account_id="A")

        with pytest.raises(PydanticValidationError):
            session.account_id = "B"

    def test_repr_hides_tokens(self):
        session = Session.from_cst("secret-cst", "secret-xst", account_id="A")

        assert "secret-cst" not in repr(session)
        assert "secret-xst" not in repr(session)


class TestTransitions:
    """Transitions return new sessions."""

    def test_with_account_keeps_tokens(self):
        session = Session.from_cst("c", "x", account_id="A", now=NOW)

        switched = session.with_account("B")

        assert switched.account_id == "B"
        assert switched.auth == session.auth
        assert switched.expires_at == session.expires_at
        assert session.account_id == "A"

    def test_with_account_adopts_rotated_tokens(self):
        session = Session.from_cst("c", "x", account_id="A", now=NOW)
        later = NOW + timedelta(hours=1)

        switched = session.with_account("B", auth=CSTAuth(cst="c2", security_token="x2"), now=later)

        assert switched.auth.cst == "c2"
        assert switched.expires_at == later + CST_SESSION_LIFETIME

    def test_with_oauth_moves_expiry(self):
        session = Session.from_oauth(make_oauth(expires_in=60), account_id="A", client_id="C")
        new_token = make_oauth(expires_in=120, issued_at=NOW + timedelta(seconds=50))

        refreshed = session.with_oauth(new_token)

        assert refreshed.auth.expires_in == 120
        assert refreshed.expires_at == NOW + timedelta(seconds=170)
        assert refreshed.account_id == "A"
        assert refreshed.client_id == "C"

    def test_oauth_from_response_parses_string_lifetime(self):
        token = OAuthAuth.from_response(
            {
                "access_token": "a",
                "refresh_token": "r",
                "scope": "profile",
                "token_type": "Bearer",
                "expires_in": "60",
            },
            issued_at=NOW,
        )

        assert token.expires_in == 60
        assert token.expires_at == NOW + timedelta(seconds=60)


class TestSessionSlot:
    """Exclusive session holder."""

    def test_empty_slot_raises(self):
        slot = SessionSlot()

        assert slot.is_empty
        with pytest.raises(AuthenticationError):
            slot.session

    def test_replace_installs_new_value(self):
        first = Session.from_cst("c", "x", account_id="A")
        second = first.with_account("B")
        slot = SessionSlot(first)

        slot.replace(second)

        assert slot.session is second

    def test_clear(self):
        slot = SessionSlot(Session.from_cst("c", "x", account_id="A"))

        slot.clear()

        assert slot.is_empty

    def test_repr_has_no_tokens(self):
        slot = SessionSlot(Session.from_cst("secret-cst", "secret-xst", account_id="A"))

        assert "secret" not in repr(slot)
        assert "A" in repr(slot)
