"""Exception hierarchy for scriptsync.

Every failure raised by the credential store, the auth session, the
transport and the project client derives from ScriptSyncError.
"""

from __future__ import annotations

from typing import Any


class ScriptSyncError(Exception):
    """Base exception for scriptsync errors."""


# --- Credentials ---


class ConfigMissingError(ScriptSyncError):
    """Raised when no app registration (config.json) exists.

    The caller must run the interactive setup before anything else.
    """


class CorruptTokenError(ScriptSyncError):
    """Raised when tokens.json exists but cannot be parsed."""


class UnauthenticatedError(ScriptSyncError):
    """Raised when no token record has ever been stored."""


class ExchangeFailedError(ScriptSyncError):
    """Raised when an authorization code could not be exchanged for tokens."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authorization code exchange failed: {reason}")
        self.reason = reason


class ReauthorizationRequiredError(ScriptSyncError):
    """Raised when stored credentials can no longer be used.

    This is the only error that calls for re-running the interactive
    authorization flow instead of aborting the current call.
    """


# --- Transport ---


class TransportError(ScriptSyncError):
    """Base exception for transport errors."""


class TransportTimeoutError(TransportError):
    """Raised when a request times out."""


class TransportCancelledError(TransportError):
    """Raised when a request is aborted because the HTTP client was closed."""


class NotFoundError(TransportError):
    """Raised when a script project is not found (404)."""


class APIError(TransportError):
    """Raised when the API returns an error."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteExecutionError(ScriptSyncError):
    """A well-formed failure payload returned by the execution endpoint."""

    def __init__(
        self, code: int, message: str, details: tuple[dict[str, Any], ...] = ()
    ) -> None:
        super().__init__(f"Script execution failed ({code}): {message}")
        self.code = code
        self.message = message
        self.details = details


# --- Project operations ---


class ProjectOperationError(ScriptSyncError):
    """A remote call on a project failed.

    Attributes:
        project_id: The script project the call targeted ("" for listings).
        operation: Name of the client operation, e.g. "get_project".
        cause: The underlying transport error.
    """

    def __init__(self, project_id: str, operation: str, cause: Exception) -> None:
        target = f" for {project_id}" if project_id else ""
        super().__init__(f"{operation} failed{target}: {cause}")
        self.project_id = project_id
        self.operation = operation
        self.cause = cause


class FetchFailedError(ProjectOperationError):
    """Raised when reading project data fails."""


class UpdateRejectedError(ProjectOperationError):
    """Raised when the remote service refuses a write."""
