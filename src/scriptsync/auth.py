"""OAuth2 authorization-code flow and token lifecycle.

AuthSession walks the states

    UNCONFIGURED -> AWAITING_AUTHORIZATION -> AUTHORIZED <-> EXPIRED

and hands out AuthorizedSession objects that carry a currently valid bearer
token. The state is always derived from what is on disk; nothing is cached
between calls.
"""

from __future__ import annotations

import asyncio
import time
import urllib.parse
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from loguru import logger

from scriptsync.config import GOOGLE_AUTH_URI, GOOGLE_TOKEN_URI, SCOPES, Settings
from scriptsync.errors import (
    ConfigMissingError,
    ExchangeFailedError,
    ReauthorizationRequiredError,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    UnauthenticatedError,
)
from scriptsync.store import AppRegistration, CredentialStore, TokenRecord

DEFAULT_REFRESH_SKEW = 60


class AuthState(Enum):
    UNCONFIGURED = "unconfigured"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AuthorizedSession:
    """A currently valid bearer token. Exposes nothing else of the record."""

    _token: TokenRecord = field(repr=False)

    @property
    def bearer_token(self) -> str:
        return self._token.access_token

    @property
    def expires_at(self) -> float:
        return self._token.expires_at

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"{self._token.token_type} {self._token.access_token}"}


class _TokenEndpointError(Exception):
    """Non-success answer from the token endpoint."""

    def __init__(self, error: str, description: str = "") -> None:
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error


class AuthSession:
    """Owns the OAuth2 state machine for a single local user.

    Args:
        store: Where the registration and tokens are persisted.
        http_client: Long-lived client used for token endpoint calls.
        auth_uri: Authorization endpoint.
        token_uri: Token endpoint.
        scopes: Scopes requested during authorization.
        refresh_skew: Seconds before expiry at which a token is refreshed.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        *,
        auth_uri: str = GOOGLE_AUTH_URI,
        token_uri: str = GOOGLE_TOKEN_URI,
        scopes: Sequence[str] = SCOPES,
        refresh_skew: int = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._http = http_client
        self._auth_uri = auth_uri
        self._token_uri = token_uri
        self._scopes = tuple(scopes)
        self._refresh_skew = refresh_skew
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, store: CredentialStore, http_client: httpx.AsyncClient
    ) -> AuthSession:
        return cls(
            store,
            http_client,
            auth_uri=settings.auth_uri,
            token_uri=settings.token_uri,
            refresh_skew=settings.refresh_skew_seconds,
        )

    @property
    def state(self) -> AuthState:
        """Current state, derived from the stored registration and token."""
        try:
            self._store.load_registration()
        except ConfigMissingError:
            return AuthState.UNCONFIGURED
        token = self._store.load_token()
        if token is None:
            return AuthState.AWAITING_AUTHORIZATION
        if token.is_valid(self._refresh_skew, now=self._clock()):
            return AuthState.AUTHORIZED
        return AuthState.EXPIRED

    # --- Authorization ---

    def build_authorization_url(self) -> str:
        """Build the consent URL the user opens in a browser.

        Deterministic for a given registration and scope set.
        """
        registration = self._store.load_registration()
        params = {
            "client_id": registration.client_id,
            "redirect_uri": registration.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "access_type": "offline",
            "prompt": "consent",
        }
        query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
        return f"{self._auth_uri}?{query}"

    async def exchange_code(self, code: str) -> TokenRecord:
        """Exchange a one-time authorization code for tokens and persist them.

        Never retried: an authorization code can only be used once.

        Raises:
            ConfigMissingError: If no registration exists.
            ExchangeFailedError: On any non-success response or bad payload.
        """
        registration = self._store.load_registration()
        data = {
            "code": code.strip(),
            "client_id": registration.client_id,
            "client_secret": registration.client_secret,
            "redirect_uri": registration.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            payload = await self._post_token_endpoint(data)
            token = self._token_from_response(payload)
        except _TokenEndpointError as e:
            raise ExchangeFailedError(str(e)) from e
        except TransportError as e:
            raise ExchangeFailedError(f"could not reach token endpoint: {e}") from e

        if token.refresh_token is None:
            logger.warning(
                "Token endpoint issued no refresh token; "
                "re-authorization will be needed when the access token expires"
            )
        self._store.save_token(token)
        logger.info(
            "Authorization complete, token expires in {} seconds",
            token.expires_in_seconds(now=self._clock()),
        )
        return token

    # --- Session ---

    async def get_authorized_session(
        self, *, rejected_token: str | None = None
    ) -> AuthorizedSession:
        """Return a session with a currently valid bearer token.

        Refreshes at most once per call when the stored token is within the
        refresh skew of its expiry. Concurrent callers in this process share
        one refresh.

        Args:
            rejected_token: An access token the remote service just refused.
                If it is still the stored token, a refresh is forced.

        Raises:
            UnauthenticatedError: If no token has ever been stored.
            ReauthorizationRequiredError: If the token cannot be refreshed.
            TransportError: If the token endpoint cannot be reached.
        """
        token = self._require_token()
        if self._is_usable(token, rejected_token):
            return AuthorizedSession(token)

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock
            current = self._require_token()
            if self._is_usable(current, rejected_token):
                return AuthorizedSession(current)
            refreshed = await self._refresh(current)
            return AuthorizedSession(refreshed)

    # --- Collaborator facade ---

    def authorize(self) -> str:
        """Return the authorization URL for the interactive flow."""
        return self.build_authorization_url()

    async def complete_authorization(self, code: str) -> None:
        """Finish the interactive flow with the code from the redirect."""
        await self.exchange_code(code)

    def is_authenticated(self) -> bool:
        """Whether stored credentials can produce a bearer token without user action."""
        token = self._store.load_token()
        if token is None or not token.access_token:
            return False
        return token.refresh_token is not None or token.is_valid(
            self._refresh_skew, now=self._clock()
        )

    # --- Internals ---

    def _require_token(self) -> TokenRecord:
        token = self._store.load_token()
        if token is None:
            raise UnauthenticatedError(
                "Not authorized yet. Run 'scriptsync login' first."
            )
        return token

    def _is_usable(self, token: TokenRecord, rejected_token: str | None) -> bool:
        if rejected_token is not None and token.access_token == rejected_token:
            return False
        return token.is_valid(self._refresh_skew, now=self._clock())

    async def _refresh(self, token: TokenRecord) -> TokenRecord:
        if token.refresh_token is None:
            raise ReauthorizationRequiredError(
                "Access token expired and no refresh token is stored"
            )

        registration = self._store.load_registration()
        logger.info("Refreshing access token")
        try:
            refreshed = await self._request_refresh(registration, token)
        except _TokenEndpointError as e:
            if e.error != "invalid_grant":
                raise ReauthorizationRequiredError(f"Token refresh failed: {e}") from e
            refreshed = await self._recover_from_invalid_grant(registration, token, e)

        self._store.save_token(refreshed)
        logger.info(
            "Access token refreshed, expires in {} seconds",
            refreshed.expires_in_seconds(now=self._clock()),
        )
        return refreshed

    async def _recover_from_invalid_grant(
        self,
        registration: AppRegistration,
        token: TokenRecord,
        error: _TokenEndpointError,
    ) -> TokenRecord:
        """Reload from disk after invalid_grant and retry once.

        Another process may have rotated the refresh token between our load
        and our refresh call.
        """
        reloaded = self._store.load_token()
        if reloaded is None:
            raise UnauthenticatedError("Token file disappeared during refresh") from error
        if reloaded.access_token != token.access_token and reloaded.is_valid(
            self._refresh_skew, now=self._clock()
        ):
            logger.info("Token was refreshed by another process")
            return reloaded
        if reloaded.refresh_token is None or reloaded.refresh_token == token.refresh_token:
            raise ReauthorizationRequiredError(
                f"Refresh token was rejected: {error}"
            ) from error

        logger.info("Retrying refresh with token rotated by another process")
        try:
            return await self._request_refresh(registration, reloaded)
        except _TokenEndpointError as e:
            raise ReauthorizationRequiredError(f"Token refresh failed: {e}") from e

    async def _request_refresh(
        self, registration: AppRegistration, token: TokenRecord
    ) -> TokenRecord:
        assert token.refresh_token is not None
        data = {
            "refresh_token": token.refresh_token,
            "client_id": registration.client_id,
            "client_secret": registration.client_secret,
            "grant_type": "refresh_token",
        }
        payload = await self._post_token_endpoint(data)
        return self._token_from_response(payload, previous=token)

    async def _post_token_endpoint(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            resp = await self._http.post(
                self._token_uri,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Token endpoint timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e
        except RuntimeError as e:
            if self._http.is_closed:
                raise TransportCancelledError(
                    "HTTP client closed before the token request completed"
                ) from e
            raise

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not resp.is_success:
            if isinstance(payload, dict) and payload.get("error"):
                raise _TokenEndpointError(
                    str(payload["error"]), str(payload.get("error_description", ""))
                )
            raise _TokenEndpointError(f"HTTP {resp.status_code}", resp.text[:200])
        if not isinstance(payload, dict):
            raise _TokenEndpointError("malformed_response", "body is not a JSON object")
        return payload

    def _token_from_response(
        self, payload: dict[str, Any], previous: TokenRecord | None = None
    ) -> TokenRecord:
        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise _TokenEndpointError("malformed_response", "missing access_token")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            raise _TokenEndpointError("malformed_response", "missing expires_in")

        # Providers may omit refresh_token and scope on refresh
        refresh_token = payload.get("refresh_token") or (
            previous.refresh_token if previous else None
        )
        scope_str = payload.get("scope")
        scope = (
            frozenset(scope_str.split())
            if isinstance(scope_str, str) and scope_str
            else (previous.scope if previous else frozenset())
        )
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            scope=scope,
            token_type=payload.get("token_type") or "Bearer",
            expiry_date=int((self._clock() + expires_in) * 1000),
        )
