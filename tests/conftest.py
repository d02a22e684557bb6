"""Shared test fixtures for scriptsync."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from scriptsync.auth import AuthSession
from scriptsync.store import AppRegistration, CredentialStore, TokenRecord

TOKEN_URI = "https://oauth.test/token"
AUTH_URI = "https://oauth.test/auth"
NOW = 1_700_000_000.0


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingHandler:
    """httpx.MockTransport handler that records requests and replays routes.

    Routes map (method, path) to a callable returning an httpx.Response,
    or to a list of such callables consumed in order.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Callable[[httpx.Request], httpx.Response]]] = {}

    def add(
        self,
        method: str,
        path: str,
        *responders: Callable[[httpx.Request], httpx.Response],
    ) -> None:
        self._routes.setdefault((method, path), []).extend(responders)

    def add_json(
        self, method: str, path: str, body: Any, status_code: int = 200
    ) -> None:
        self.add(method, path, lambda _req: httpx.Response(status_code, json=body))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responders = self._routes.get((request.method, request.url.path))
        if not responders:
            return httpx.Response(599, text=f"no route for {request.method} {request.url}")
        responder = responders.pop(0) if len(responders) > 1 else responders[0]
        return responder(request)


def make_token(
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: float = NOW + 3600,
    scope: frozenset[str] = frozenset({"https://www.googleapis.com/auth/script.projects"}),
) -> TokenRecord:
    return TokenRecord(
        access_token=access_token,
        refresh_token=refresh_token,
        scope=scope,
        token_type="Bearer",
        expiry_date=int(expires_at * 1000),
    )


def token_response(
    access_token: str = "access-2",
    expires_in: int = 3600,
    refresh_token: str | None = None,
    scope: str | None = None,
) -> Callable[[httpx.Request], httpx.Response]:
    body: dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if scope is not None:
        body["scope"] = scope
    return lambda _req: httpx.Response(200, json=body)


def token_error(
    error: str = "invalid_grant", status_code: int = 400
) -> Callable[[httpx.Request], httpx.Response]:
    return lambda _req: httpx.Response(
        status_code, json={"error": error, "error_description": "Token has been revoked."}
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "config"


@pytest.fixture
def registration(config_dir: Path) -> AppRegistration:
    return AppRegistration(
        client_id="client-123.apps.googleusercontent.com",
        client_secret="secret-xyz",
        redirect_uri="http://localhost:3000/oauth2callback",
        token_path=config_dir / "tokens.json",
    )


@pytest.fixture
def store(config_dir: Path, registration: AppRegistration) -> CredentialStore:
    store = CredentialStore(config_dir)
    store.save_registration(registration)
    return store


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def http_client(handler: RecordingHandler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def auth(
    store: CredentialStore, http_client: httpx.AsyncClient, clock: FakeClock
) -> AuthSession:
    return AuthSession(
        store,
        http_client,
        auth_uri=AUTH_URI,
        token_uri=TOKEN_URI,
        refresh_skew=60,
        clock=clock,
    )


def read_json(path: Path) -> dict[str, Any]:
    data: dict[str, Any] = json.loads(path.read_text())
    return data
