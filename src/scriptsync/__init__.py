"""scriptsync - OAuth2 credentials and project sync for Google Apps Script.

Authorize once, then read, replace, run and deploy Apps Script projects.
"""

__version__ = "0.1.0"

from scriptsync.auth import AuthorizedSession, AuthSession, AuthState
from scriptsync.client import ProjectClient
from scriptsync.errors import (
    APIError,
    ConfigMissingError,
    CorruptTokenError,
    ExchangeFailedError,
    FetchFailedError,
    NotFoundError,
    ProjectOperationError,
    ReauthorizationRequiredError,
    RemoteExecutionError,
    ScriptSyncError,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    UnauthenticatedError,
    UpdateRejectedError,
)
from scriptsync.store import AppRegistration, CredentialStore, TokenRecord
from scriptsync.transport import (
    AppsScriptTransport,
    DeploymentInfo,
    ExecutionOutcome,
    FileKind,
    ProjectFile,
    ProjectPage,
    ProjectSnapshot,
    ProjectSummary,
    RemoteError,
    Transport,
    create_http_client,
)

__all__ = [
    "APIError",
    "AppRegistration",
    "AppsScriptTransport",
    "AuthSession",
    "AuthState",
    "AuthorizedSession",
    "ConfigMissingError",
    "CorruptTokenError",
    "CredentialStore",
    "DeploymentInfo",
    "ExchangeFailedError",
    "ExecutionOutcome",
    "FetchFailedError",
    "FileKind",
    "NotFoundError",
    "ProjectClient",
    "ProjectFile",
    "ProjectOperationError",
    "ProjectPage",
    "ProjectSnapshot",
    "ProjectSummary",
    "ReauthorizationRequiredError",
    "RemoteError",
    "RemoteExecutionError",
    "ScriptSyncError",
    "TokenRecord",
    "Transport",
    "TransportCancelledError",
    "TransportError",
    "TransportTimeoutError",
    "UnauthenticatedError",
    "UpdateRejectedError",
    "__version__",
    "create_http_client",
]
