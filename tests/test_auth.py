"""Tests for the OAuth2 session state machine."""

from __future__ import annotations

import asyncio
import urllib.parse
from pathlib import Path

import httpx
import pytest
from conftest import (
    AUTH_URI,
    NOW,
    TOKEN_URI,
    FakeClock,
    RecordingHandler,
    make_token,
    token_error,
    token_response,
)

from scriptsync.auth import AuthSession, AuthState
from scriptsync.config import SCOPES
from scriptsync.errors import (
    ConfigMissingError,
    ExchangeFailedError,
    ReauthorizationRequiredError,
    TransportCancelledError,
    TransportError,
    UnauthenticatedError,
)
from scriptsync.store import CredentialStore

TOKEN_PATH = urllib.parse.urlparse(TOKEN_URI).path


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(request.content.decode()))


class TestAuthorizationUrl:
    def test_contains_registration_and_scopes(self, auth: AuthSession) -> None:
        url = auth.build_authorization_url()
        assert url.startswith(AUTH_URI + "?")
        params = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query))
        assert params["client_id"] == "client-123.apps.googleusercontent.com"
        assert params["redirect_uri"] == "http://localhost:3000/oauth2callback"
        assert params["response_type"] == "code"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["scope"].split() == SCOPES

    def test_is_deterministic(self, auth: AuthSession, handler: RecordingHandler) -> None:
        assert auth.build_authorization_url() == auth.build_authorization_url()
        assert auth.authorize() == auth.build_authorization_url()
        assert handler.requests == []

    def test_requires_registration(
        self, tmp_path: Path, http_client: httpx.AsyncClient
    ) -> None:
        auth = AuthSession(CredentialStore(tmp_path / "empty"), http_client)
        with pytest.raises(ConfigMissingError):
            auth.build_authorization_url()


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_success_persists_token(
        self,
        auth: AuthSession,
        store: CredentialStore,
        handler: RecordingHandler,
    ) -> None:
        handler.add(
            "POST",
            TOKEN_PATH,
            token_response(
                access_token="fresh",
                refresh_token="refresh-new",
                expires_in=3599,
                scope="https://www.googleapis.com/auth/script.projects",
            ),
        )

        token = await auth.exchange_code("  4/0Abc  ")

        assert token.access_token == "fresh"
        assert token.refresh_token == "refresh-new"
        assert token.expiry_date == int((NOW + 3599) * 1000)
        assert store.load_token() == token

        (request,) = handler.calls("POST", TOKEN_PATH)
        form = _form(request)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "4/0Abc"
        assert form["client_secret"] == "secret-xyz"
        assert form["redirect_uri"] == "http://localhost:3000/oauth2callback"

    @pytest.mark.asyncio
    async def test_error_response_is_not_retried(
        self,
        auth: AuthSession,
        store: CredentialStore,
        handler: RecordingHandler,
    ) -> None:
        handler.add("POST", TOKEN_PATH, token_error("invalid_grant"))

        with pytest.raises(ExchangeFailedError) as exc_info:
            await auth.exchange_code("used-code")

        assert "invalid_grant" in exc_info.value.reason
        assert len(handler.calls("POST", TOKEN_PATH)) == 1
        assert store.load_token() is None

    @pytest.mark.asyncio
    async def test_malformed_payload(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        handler.add_json("POST", TOKEN_PATH, {"token_type": "Bearer"})

        with pytest.raises(ExchangeFailedError, match="access_token"):
            await auth.exchange_code("code")
        assert store.load_token() is None

    @pytest.mark.asyncio
    async def test_non_json_error(
        self, auth: AuthSession, handler: RecordingHandler
    ) -> None:
        handler.add("POST", TOKEN_PATH, lambda _r: httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(ExchangeFailedError, match="502"):
            await auth.exchange_code("code")

    @pytest.mark.asyncio
    async def test_closed_client(
        self,
        auth: AuthSession,
        http_client: httpx.AsyncClient,
        handler: RecordingHandler,
    ) -> None:
        await http_client.aclose()

        with pytest.raises(ExchangeFailedError):
            await auth.exchange_code("code")
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_complete_authorization(
        self, auth: AuthSession, handler: RecordingHandler
    ) -> None:
        handler.add("POST", TOKEN_PATH, token_response(refresh_token="r"))
        assert auth.is_authenticated() is False
        await auth.complete_authorization("code")
        assert auth.is_authenticated() is True


class TestGetAuthorizedSession:
    @pytest.mark.asyncio
    async def test_no_token_is_unauthenticated(
        self, auth: AuthSession, handler: RecordingHandler
    ) -> None:
        with pytest.raises(UnauthenticatedError):
            await auth.get_authorized_session()
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_fresh_token_needs_no_network(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        stored = make_token(expires_at=NOW + 61)
        store.save_token(stored)

        session = await auth.get_authorized_session()

        assert session.bearer_token == stored.access_token
        assert session.authorization_header() == {"Authorization": "Bearer access-1"}
        assert handler.requests == []
        assert store.load_token() == stored

    @pytest.mark.asyncio
    async def test_token_within_skew_is_refreshed(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        """Expires in 30s with a 60s skew: refresh path."""
        store.save_token(make_token(expires_at=NOW + 30))
        handler.add("POST", TOKEN_PATH, token_response(access_token="access-2"))

        session = await auth.get_authorized_session()

        assert session.bearer_token == "access-2"
        (request,) = handler.calls("POST", TOKEN_PATH)
        form = _form(request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"

        persisted = store.load_token()
        assert persisted is not None
        assert persisted.access_token == "access-2"
        assert persisted.refresh_token == "refresh-1"
        assert persisted.expiry_date == int((NOW + 3600) * 1000)

    @pytest.mark.asyncio
    async def test_token_expiring_exactly_at_skew_is_refreshed(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW + 60))
        handler.add("POST", TOKEN_PATH, token_response(access_token="access-2"))

        session = await auth.get_authorized_session()

        assert session.bearer_token == "access-2"
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_used_as_is(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        """Token files written with expiry_date 0 have no known expiry."""
        store.save_token(make_token(expires_at=0))

        session = await auth.get_authorized_session()

        assert session.bearer_token == "access-1"
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_closed_client_during_refresh(
        self,
        auth: AuthSession,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 1))
        await http_client.aclose()

        with pytest.raises(TransportCancelledError):
            await auth.get_authorized_session()

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 10))
        handler.add("POST", TOKEN_PATH, token_response(refresh_token="refresh-2"))

        await auth.get_authorized_session()

        persisted = store.load_token()
        assert persisted is not None
        assert persisted.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_scope_kept_when_refresh_omits_it(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        original = make_token(expires_at=NOW - 10)
        store.save_token(original)
        handler.add("POST", TOKEN_PATH, token_response())

        await auth.get_authorized_session()

        persisted = store.load_token()
        assert persisted is not None
        assert persisted.scope == original.scope

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(refresh_token=None, expires_at=NOW - 1))

        with pytest.raises(ReauthorizationRequiredError):
            await auth.get_authorized_session()
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_refresh_rejected(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 1))
        handler.add("POST", TOKEN_PATH, token_error("unauthorized_client", 401))

        with pytest.raises(ReauthorizationRequiredError, match="unauthorized_client"):
            await auth.get_authorized_session()
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_with_unchanged_disk(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 1))
        handler.add("POST", TOKEN_PATH, token_error("invalid_grant"))

        with pytest.raises(ReauthorizationRequiredError):
            await auth.get_authorized_session()
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_after_other_process_refreshed(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        """Another process refreshed (and rotated) while our call was in flight."""
        store.save_token(make_token(expires_at=NOW - 1))

        def other_process_wins(_request: httpx.Request) -> httpx.Response:
            store.save_token(
                make_token(access_token="theirs", refresh_token="refresh-2")
            )
            return httpx.Response(400, json={"error": "invalid_grant"})

        handler.add("POST", TOKEN_PATH, other_process_wins)

        session = await auth.get_authorized_session()

        assert session.bearer_token == "theirs"
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_retries_with_rotated_refresh_token(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 1))

        def rotated_elsewhere(_request: httpx.Request) -> httpx.Response:
            store.save_token(
                make_token(
                    access_token="stale", refresh_token="refresh-2", expires_at=NOW - 1
                )
            )
            return httpx.Response(400, json={"error": "invalid_grant"})

        handler.add(
            "POST", TOKEN_PATH, rotated_elsewhere, token_response(access_token="mine")
        )

        session = await auth.get_authorized_session()

        assert session.bearer_token == "mine"
        calls = handler.calls("POST", TOKEN_PATH)
        assert [_form(c)["refresh_token"] for c in calls] == ["refresh-1", "refresh-2"]
        persisted = store.load_token()
        assert persisted is not None
        assert persisted.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_network_error_during_refresh(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW - 1))

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        handler.add("POST", TOKEN_PATH, unreachable)

        with pytest.raises(TransportError):
            await auth.get_authorized_session()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW + 5))
        handler.add("POST", TOKEN_PATH, token_response(access_token="shared"))

        sessions = await asyncio.gather(
            *(auth.get_authorized_session() for _ in range(5))
        )

        assert {s.bearer_token for s in sessions} == {"shared"}
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_rejected_token_forces_refresh(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(expires_at=NOW + 3600))
        handler.add("POST", TOKEN_PATH, token_response(access_token="access-2"))

        session = await auth.get_authorized_session(rejected_token="access-1")

        assert session.bearer_token == "access-2"
        assert len(handler.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_rejected_token_already_replaced(
        self, auth: AuthSession, store: CredentialStore, handler: RecordingHandler
    ) -> None:
        store.save_token(make_token(access_token="access-2"))

        session = await auth.get_authorized_session(rejected_token="access-1")

        assert session.bearer_token == "access-2"
        assert handler.requests == []


class TestStateAndStatus:
    def test_unconfigured(self, tmp_path: Path, http_client: httpx.AsyncClient) -> None:
        auth = AuthSession(CredentialStore(tmp_path / "none"), http_client)
        assert auth.state is AuthState.UNCONFIGURED
        assert auth.is_authenticated() is False

    def test_awaiting_authorization(self, auth: AuthSession) -> None:
        assert auth.state is AuthState.AWAITING_AUTHORIZATION
        assert auth.is_authenticated() is False

    def test_authorized_then_expired(
        self, auth: AuthSession, store: CredentialStore, clock: FakeClock
    ) -> None:
        store.save_token(make_token(expires_at=NOW + 600))
        assert auth.state is AuthState.AUTHORIZED

        clock.now = NOW + 601
        assert auth.state is AuthState.EXPIRED
        assert auth.is_authenticated() is True

    def test_expired_without_refresh_token_is_not_authenticated(
        self, auth: AuthSession, store: CredentialStore
    ) -> None:
        store.save_token(make_token(refresh_token=None, expires_at=NOW - 1))
        assert auth.is_authenticated() is False
