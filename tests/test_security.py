"""Tests for caller authentication and the cron guard."""

import pytest
from starlette.requests import Request

from docqueue.errors import AuthenticationError
from docqueue.security import (
    CallerIdentity,
    StaticTokenAuthenticator,
    get_bearer_token,
    verify_cron_secret,
)
from docqueue.states import Plan, Tier


def make_request(headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.5", 1234),
    }
    return Request(scope)


class TestStaticTokenAuthenticator:
    """Tests for the token table authenticator."""

    @pytest.fixture
    def authenticator(self) -> StaticTokenAuthenticator:
        return StaticTokenAuthenticator(
            {"tok-free": "alice", "tok-pro": "bob:pro_monthly", "tok-team": "carol:free"}
        )

    def test_resolves_plan(self, authenticator: StaticTokenAuthenticator) -> None:
        caller = authenticator.authenticate("tok-pro")
        assert caller == CallerIdentity("bob", Plan.PRO_MONTHLY)
        assert caller.tier is Tier.ELEVATED

    def test_plan_defaults_to_free(self, authenticator: StaticTokenAuthenticator) -> None:
        caller = authenticator.authenticate("tok-free")
        assert caller.plan is Plan.FREE
        assert caller.tier is Tier.STANDARD

    def test_unknown_token(self, authenticator: StaticTokenAuthenticator) -> None:
        with pytest.raises(AuthenticationError):
            authenticator.authenticate("tok-unknown")

    def test_rejects_entry_without_owner(self) -> None:
        with pytest.raises(ValueError):
            StaticTokenAuthenticator({"tok": ":free"})

    def test_rejects_unknown_plan(self) -> None:
        with pytest.raises(ValueError):
            StaticTokenAuthenticator({"tok": "dave:platinum"})


class TestBearerToken:
    """Tests for Authorization header parsing."""

    def test_extracts_token(self) -> None:
        assert get_bearer_token(make_request({"Authorization": "Bearer abc123"})) == "abc123"

    @pytest.mark.parametrize("header", [None, "", "Bearer ", "Basic abc", "bearer abc"])
    def test_rejects_missing_or_malformed(self, header: str | None) -> None:
        headers = {"Authorization": header} if header is not None else {}
        with pytest.raises(AuthenticationError):
            get_bearer_token(make_request(headers))


class TestCronSecret:
    """Tests for the internal endpoint guard."""

    def test_accepts_header(self) -> None:
        verify_cron_secret(make_request({"X-Cron-Secret": "s3cret"}), "s3cret")

    def test_accepts_bearer(self) -> None:
        verify_cron_secret(make_request({"Authorization": "Bearer s3cret"}), "s3cret")

    def test_rejects_wrong_secret(self) -> None:
        with pytest.raises(AuthenticationError):
            verify_cron_secret(make_request({"X-Cron-Secret": "guess"}), "s3cret")

    def test_closed_without_configured_secret(self) -> None:
        with pytest.raises(AuthenticationError, match="disabled"):
            verify_cron_secret(make_request({"X-Cron-Secret": ""}), None)
