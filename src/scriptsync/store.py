"""Durable storage for the app registration and the OAuth token record.

Both records live as JSON files under a per-user configuration directory:

    ~/.config/scriptsync/
        config.json     # {clientId, clientSecret, redirectUri, tokenPath}
        tokens.json     # {access_token, refresh_token, scope, token_type, expiry_date}

Nothing is cached in memory. Every load re-reads the file so that separate
processes observe each other's refreshes.
"""

from __future__ import annotations

import json
import os
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from scriptsync.errors import ConfigMissingError, CorruptTokenError


@dataclass(frozen=True)
class AppRegistration:
    """OAuth client registration for this installation.

    Attributes:
        client_id: OAuth2 client ID.
        client_secret: OAuth2 client secret.
        redirect_uri: Redirect URI registered for the client.
        token_path: Where tokens.json lives. None means the store default.
    """

    client_id: str
    client_secret: str
    redirect_uri: str
    token_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the config.json layout."""
        data: dict[str, Any] = {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "redirectUri": self.redirect_uri,
        }
        if self.token_path is not None:
            data["tokenPath"] = str(self.token_path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppRegistration:
        """Create AppRegistration from config.json contents."""
        token_path = data.get("tokenPath")
        return cls(
            client_id=data["clientId"],
            client_secret=data["clientSecret"],
            redirect_uri=data["redirectUri"],
            token_path=Path(token_path).expanduser() if token_path else None,
        )


@dataclass(frozen=True)
class TokenRecord:
    """OAuth2 token pair with its absolute expiry.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Long-lived token used to mint new access tokens.
            Without one the record is useless once access_token expires.
        scope: Granted scopes.
        token_type: Usually "Bearer".
        expiry_date: Absolute expiry as epoch milliseconds. 0 means the
            expiry is unknown; such a token is used until the API rejects it.
    """

    access_token: str
    refresh_token: str | None
    scope: frozenset[str] = field(default_factory=frozenset)
    token_type: str = "Bearer"
    expiry_date: int = 0

    @property
    def expires_at(self) -> float:
        """Expiry as a Unix timestamp in seconds."""
        return self.expiry_date / 1000

    def is_valid(self, buffer_seconds: int = 60, now: float | None = None) -> bool:
        """Check if the access token is still usable with a safety buffer."""
        if not self.expiry_date:
            return True
        current = time.time() if now is None else now
        return current < self.expires_at - buffer_seconds

    def expires_in_seconds(self, now: float | None = None) -> int:
        """Return seconds until the access token expires."""
        current = time.time() if now is None else now
        return max(0, int(self.expires_at - current))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the tokens.json layout."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "scope": " ".join(sorted(self.scope)),
            "token_type": self.token_type,
            "expiry_date": self.expiry_date,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenRecord:
        """Create TokenRecord from tokens.json contents."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            scope=frozenset((data.get("scope") or "").split()),
            token_type=data.get("token_type") or "Bearer",
            expiry_date=int(data.get("expiry_date") or 0),
        )


class CredentialStore:
    """Reads and writes config.json and tokens.json.

    Args:
        config_dir: Directory holding config.json.
        token_path: Explicit tokens.json location. When omitted, the
            registration's tokenPath is used, then <config_dir>/tokens.json.
    """

    def __init__(self, config_dir: str | Path, token_path: str | Path | None = None) -> None:
        self._config_dir = Path(config_dir).expanduser()
        self._token_path = Path(token_path).expanduser() if token_path else None

    @property
    def config_path(self) -> Path:
        return self._config_dir / "config.json"

    @property
    def token_path(self) -> Path:
        """Resolve where tokens.json lives."""
        if self._token_path is not None:
            return self._token_path
        if self.config_path.exists():
            registration = self.load_registration()
            if registration.token_path is not None:
                return registration.token_path
        return self._config_dir / "tokens.json"

    # --- Registration ---

    def load_registration(self) -> AppRegistration:
        """Load the app registration.

        Raises:
            ConfigMissingError: If config.json does not exist or is unusable.
        """
        if not self.config_path.exists():
            raise ConfigMissingError(
                f"No app registration found at {self.config_path}. "
                "Run 'scriptsync setup' first."
            )
        try:
            data = json.loads(self.config_path.read_text())
            return AppRegistration.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigMissingError(
                f"Invalid app registration in {self.config_path}: {e}"
            ) from e

    def save_registration(self, registration: AppRegistration) -> None:
        """Write config.json (used by interactive setup)."""
        _write_secure_json(self.config_path, registration.to_dict())
        logger.info("App registration saved to {}", self.config_path)

    # --- Tokens ---

    def load_token(self) -> TokenRecord | None:
        """Load the stored token record.

        Returns:
            The TokenRecord, or None if no authorization was ever stored.

        Raises:
            CorruptTokenError: If tokens.json exists but cannot be parsed.
        """
        path = self.token_path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            return TokenRecord.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CorruptTokenError(f"Invalid token file {path}: {e}") from e

    def save_token(self, token: TokenRecord) -> None:
        """Atomically replace tokens.json."""
        path = self.token_path
        _write_secure_json(path, token.to_dict())
        logger.debug("Token saved to {}", path)


def _write_secure_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON via temp file and rename so readers never see a partial file."""
    # Only directories created here are restricted to 0700
    try:
        path.parent.mkdir(parents=True)
    except FileExistsError:
        pass
    else:
        path.parent.chmod(stat.S_IRWXU)

    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with temp_path.open("w") as f:
            f.write(json.dumps(data, indent=2))
            f.flush()
            os.fsync(f.fileno())
        temp_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
