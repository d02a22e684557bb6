"""Transport layer for the Google Apps Script API.

Defines the Transport protocol and its production implementation:
- AppsScriptTransport: Apps Script API v1 (plus Drive v3 for listing)
  over one long-lived httpx.AsyncClient.

Every request asks the AuthSession for a bearer token first, so the
transport never holds credentials of its own.
"""

from __future__ import annotations

import json
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import certifi
import httpx
from loguru import logger

from scriptsync.errors import (
    APIError,
    NotFoundError,
    ReauthorizationRequiredError,
    RemoteExecutionError,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
)

if TYPE_CHECKING:
    from scriptsync.auth import AuthorizedSession, AuthSession

# API constants
API_BASE = "https://script.googleapis.com/v1"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
SCRIPT_MIME_TYPE = "application/vnd.google-apps.script"
DEFAULT_TIMEOUT = 60
DEFAULT_MANIFEST = "appsscript"


def create_http_client(timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    """Create the shared HTTP client used by AuthSession and the transport."""
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    return httpx.AsyncClient(
        timeout=timeout,
        verify=ssl_context,
        headers={"Accept": "application/json"},
    )


# --- Data classes ---


class FileKind(str, Enum):
    """Apps Script file types."""

    SERVER_JS = "SERVER_JS"  # executable source (.gs)
    HTML = "HTML"  # markup
    JSON = "JSON"  # manifest (appsscript.json)


@dataclass(frozen=True)
class ProjectFile:
    """A single file within an Apps Script project."""

    name: str
    kind: FileKind
    source: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "type": self.kind.value, "source": self.source}


@dataclass(frozen=True)
class ProjectMetadata:
    """Metadata about an Apps Script project."""

    script_id: str
    title: str
    parent_id: str = ""  # Non-empty for bound scripts
    create_time: str = ""
    update_time: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProjectContent:
    """Content of an Apps Script project (all files)."""

    script_id: str
    files: tuple[ProjectFile, ...]
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProjectSnapshot:
    """Point-in-time view of a project: metadata joined with its files."""

    project_id: str
    title: str
    created_at: str
    updated_at: str
    files: tuple[ProjectFile, ...]

    def file(self, name: str) -> ProjectFile | None:
        for f in self.files:
            if f.name == name:
                return f
        return None


@dataclass(frozen=True)
class ProjectSummary:
    """One entry of a project listing."""

    project_id: str
    title: str
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class ProjectPage:
    """A page of project summaries."""

    projects: tuple[ProjectSummary, ...]
    next_page_token: str | None = None


@dataclass(frozen=True)
class RemoteError:
    """Error object carried inside a successful execution response."""

    code: int
    message: str
    details: tuple[dict[str, Any], ...] = ()

    @property
    def script_message(self) -> str:
        """The script's own error message, when the details carry one."""
        for detail in self.details:
            if detail.get("errorMessage"):
                return str(detail["errorMessage"])
        return self.message


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of scripts.run.

    Exactly one of the shapes applies:
    - completed with a return value
    - completed with a remote_error (the script or API reported a failure)
    - transport_failure (the call never produced a usable response)
    """

    completed: bool = False
    return_value: Any = None
    remote_error: RemoteError | None = None
    transport_failure: str | None = None

    @classmethod
    def returned(cls, value: Any, completed: bool = True) -> ExecutionOutcome:
        return cls(completed=completed, return_value=value)

    @classmethod
    def failed(cls, error: RemoteError, completed: bool = True) -> ExecutionOutcome:
        return cls(completed=completed, remote_error=error)

    @classmethod
    def unreachable(cls, reason: str) -> ExecutionOutcome:
        return cls(transport_failure=reason)

    @property
    def ok(self) -> bool:
        return self.remote_error is None and self.transport_failure is None

    def raise_for_error(self) -> Any:
        """Return the value, or raise the failure as an exception."""
        if self.transport_failure is not None:
            raise TransportError(self.transport_failure)
        if self.remote_error is not None:
            err = self.remote_error
            raise RemoteExecutionError(err.code, err.script_message, err.details)
        return self.return_value


@dataclass(frozen=True)
class ProcessInfo:
    """Information about a script execution process."""

    function_name: str
    process_status: str
    process_type: str
    start_time: str
    duration: str = ""
    project_name: str = ""


@dataclass(frozen=True)
class VersionInfo:
    """Information about a script version."""

    version_number: int
    description: str = ""
    create_time: str = ""


@dataclass(frozen=True)
class DeploymentInfo:
    """Information about a script deployment."""

    deployment_id: str
    version_number: int
    description: str = ""
    manifest_file_name: str = ""
    update_time: str = ""
    entry_points: tuple[dict[str, Any], ...] = ()


# --- Transport ABC ---


class Transport(ABC):
    """Abstract base class for Apps Script API transport."""

    @abstractmethod
    async def list_projects(
        self,
        page_size: int,
        page_token: str | None = None,
        search_query: str | None = None,
    ) -> ProjectPage:
        """List script projects visible to the user."""
        ...

    @abstractmethod
    async def get_metadata(self, script_id: str) -> ProjectMetadata:
        """Fetch project metadata."""
        ...

    @abstractmethod
    async def get_content(
        self, script_id: str, version_number: int | None = None
    ) -> ProjectContent:
        """Fetch all files in a project."""
        ...

    @abstractmethod
    async def update_content(
        self, script_id: str, files: list[ProjectFile]
    ) -> ProjectContent:
        """Replace all files in a project (atomic operation)."""
        ...

    @abstractmethod
    async def create_project(
        self, title: str, parent_id: str | None = None
    ) -> ProjectMetadata:
        """Create a new Apps Script project.

        Args:
            title: Project title.
            parent_id: If set, creates a container-bound script attached
                to the Google Drive file with this ID.
        """
        ...

    @abstractmethod
    async def run_function(
        self,
        script_id: str,
        function: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> ExecutionOutcome:
        """Execute a function in the script project."""
        ...

    @abstractmethod
    async def list_processes(
        self,
        script_id: str | None = None,
        limit: int = 20,
    ) -> list[ProcessInfo]:
        """List recent execution processes."""
        ...

    @abstractmethod
    async def create_version(
        self, script_id: str, description: str | None = None
    ) -> VersionInfo:
        """Create an immutable version snapshot."""
        ...

    @abstractmethod
    async def list_versions(self, script_id: str) -> list[VersionInfo]:
        """List all versions of a project."""
        ...

    @abstractmethod
    async def create_deployment(
        self,
        script_id: str,
        version_number: int,
        description: str | None = None,
        manifest_file_name: str = DEFAULT_MANIFEST,
    ) -> DeploymentInfo:
        """Create a new deployment pinned to a version."""
        ...

    @abstractmethod
    async def list_deployments(self, script_id: str) -> list[DeploymentInfo]:
        """List all deployments of a project."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        ...


# --- Production transport ---


class AppsScriptTransport(Transport):
    """Production transport using Google Apps Script API v1.

    Args:
        auth: Supplies bearer tokens and handles refresh.
        http_client: Shared client; see create_http_client().
    """

    def __init__(self, auth: AuthSession, http_client: httpx.AsyncClient) -> None:
        self._auth = auth
        self._client = http_client

    # -- Listing --

    async def list_projects(
        self,
        page_size: int,
        page_token: str | None = None,
        search_query: str | None = None,
    ) -> ProjectPage:
        query = f"mimeType='{SCRIPT_MIME_TYPE}' and trashed=false"
        if search_query:
            query += f" and name contains '{_escape_drive_query(search_query)}'"
        params: dict[str, Any] = {
            "q": query,
            "pageSize": page_size,
            "orderBy": "modifiedTime desc",
            "fields": "nextPageToken,files(id,name,createdTime,modifiedTime)",
        }
        if page_token:
            params["pageToken"] = page_token
        data = await self._request("GET", f"{DRIVE_API_BASE}/files", params=params)
        return ProjectPage(
            projects=tuple(
                ProjectSummary(
                    project_id=f.get("id", ""),
                    title=f.get("name", ""),
                    created_at=f.get("createdTime", ""),
                    updated_at=f.get("modifiedTime", ""),
                )
                for f in data.get("files", [])
            ),
            next_page_token=data.get("nextPageToken") or None,
        )

    # -- Core project methods --

    async def get_metadata(self, script_id: str) -> ProjectMetadata:
        data = await self._request("GET", f"{API_BASE}/projects/{script_id}")
        return _parse_project_metadata(data)

    async def get_content(
        self, script_id: str, version_number: int | None = None
    ) -> ProjectContent:
        params = {"versionNumber": version_number} if version_number is not None else None
        data = await self._request(
            "GET", f"{API_BASE}/projects/{script_id}/content", params=params
        )
        return _parse_project_content(script_id, data)

    async def update_content(
        self, script_id: str, files: list[ProjectFile]
    ) -> ProjectContent:
        body = {"files": [f.to_dict() for f in files]}
        data = await self._request(
            "PUT", f"{API_BASE}/projects/{script_id}/content", body=body
        )
        return _parse_project_content(script_id, data)

    async def create_project(
        self, title: str, parent_id: str | None = None
    ) -> ProjectMetadata:
        body: dict[str, str] = {"title": title}
        if parent_id:
            body["parentId"] = parent_id
        data = await self._request("POST", f"{API_BASE}/projects", body=body)
        return _parse_project_metadata(data)

    # -- Execution --

    async def run_function(
        self,
        script_id: str,
        function: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> ExecutionOutcome:
        body: dict[str, Any] = {"function": function, "devMode": dev_mode}
        if parameters:
            body["parameters"] = parameters
        data = await self._request(
            "POST", f"{API_BASE}/scripts/{script_id}:run", body=body
        )
        return _parse_execution(data)

    # -- Processes / logs --

    async def list_processes(
        self,
        script_id: str | None = None,
        limit: int = 20,
    ) -> list[ProcessInfo]:
        if script_id:
            url = f"{API_BASE}/processes:listScriptProcesses"
            params: dict[str, Any] = {"scriptId": script_id, "pageSize": limit}
        else:
            url = f"{API_BASE}/processes"
            params = {"pageSize": limit}
        data = await self._request("GET", url, params=params)
        return [
            ProcessInfo(
                function_name=p.get("functionName", ""),
                process_status=p.get("processStatus", ""),
                process_type=p.get("processType", ""),
                start_time=p.get("startTime", ""),
                duration=p.get("duration", ""),
                project_name=p.get("projectName", ""),
            )
            for p in data.get("processes", [])
        ]

    # -- Versions --

    async def create_version(
        self, script_id: str, description: str | None = None
    ) -> VersionInfo:
        body: dict[str, Any] = {}
        if description:
            body["description"] = description
        data = await self._request(
            "POST", f"{API_BASE}/projects/{script_id}/versions", body=body
        )
        return _parse_version(data)

    async def list_versions(self, script_id: str) -> list[VersionInfo]:
        data = await self._request("GET", f"{API_BASE}/projects/{script_id}/versions")
        return [_parse_version(v) for v in data.get("versions", [])]

    # -- Deployments --

    async def create_deployment(
        self,
        script_id: str,
        version_number: int,
        description: str | None = None,
        manifest_file_name: str = DEFAULT_MANIFEST,
    ) -> DeploymentInfo:
        body: dict[str, Any] = {
            "versionNumber": version_number,
            "manifestFileName": manifest_file_name,
        }
        if description:
            body["description"] = description
        data = await self._request(
            "POST", f"{API_BASE}/projects/{script_id}/deployments", body=body
        )
        return _parse_deployment(data)

    async def list_deployments(self, script_id: str) -> list[DeploymentInfo]:
        data = await self._request(
            "GET", f"{API_BASE}/projects/{script_id}/deployments"
        )
        return [_parse_deployment(d) for d in data.get("deployments", [])]

    async def close(self) -> None:
        await self._client.aclose()

    # -- HTTP helpers --

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        session = await self._auth.get_authorized_session()
        resp = await self._send(method, url, session, params, body)

        if resp.status_code == 401:
            logger.info("Access token rejected, refreshing and retrying once")
            session = await self._auth.get_authorized_session(
                rejected_token=session.bearer_token
            )
            resp = await self._send(method, url, session, params, body)
            if resp.status_code == 401:
                raise ReauthorizationRequiredError(
                    "Access token was rejected again after refresh"
                )

        self._check_status(resp)
        if not resp.content:
            return {}
        try:
            result = resp.json()
        except ValueError as e:
            raise APIError(
                f"Malformed JSON response: {e}", status_code=resp.status_code
            ) from e
        if not isinstance(result, dict):
            raise APIError("Expected a JSON object", status_code=resp.status_code)
        return result

    async def _send(
        self,
        method: str,
        url: str,
        session: AuthorizedSession,
        params: dict[str, Any] | None,
        body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = session.authorization_header()
        content = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = encode_body(body)
        try:
            return await self._client.request(
                method, url, params=params, content=content, headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Request timed out: {method} {url}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e
        except RuntimeError as e:
            if self._client.is_closed:
                raise TransportCancelledError(
                    f"HTTP client closed before {method} {url} completed"
                ) from e
            raise

    def _check_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if resp.is_success:
            return
        if status == 403:
            raise ReauthorizationRequiredError(
                f"Access denied (403): {_error_message(resp)}. "
                "Check the granted scopes and that the Apps Script API is enabled."
            )
        if status == 404:
            raise NotFoundError(
                "Script project not found. Check the script ID and permissions."
            )
        raise APIError(f"API error ({status}): {_error_message(resp)}", status_code=status)


# --- Helpers ---


def encode_body(body: dict[str, Any]) -> bytes:
    """Serialize a request body; identical input gives identical bytes."""
    return json.dumps(
        body, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _escape_drive_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message", resp.text))
    return resp.text


def _parse_project_metadata(data: dict[str, Any]) -> ProjectMetadata:
    return ProjectMetadata(
        script_id=data.get("scriptId", ""),
        title=data.get("title", ""),
        parent_id=data.get("parentId", ""),
        create_time=data.get("createTime", ""),
        update_time=data.get("updateTime", ""),
        raw=data,
    )


def _parse_file_kind(value: str | None) -> FileKind:
    try:
        return FileKind(value or FileKind.SERVER_JS.value)
    except ValueError:
        logger.warning("Unknown file type {!r}, treating as SERVER_JS", value)
        return FileKind.SERVER_JS


def _parse_project_content(script_id: str, data: dict[str, Any]) -> ProjectContent:
    files: list[ProjectFile] = []
    for f in data.get("files", []):
        files.append(
            ProjectFile(
                name=f.get("name", ""),
                kind=_parse_file_kind(f.get("type")),
                source=f.get("source", ""),
            )
        )
    return ProjectContent(
        script_id=data.get("scriptId", script_id),
        files=tuple(files),
        raw=data,
    )


def _parse_execution(data: dict[str, Any]) -> ExecutionOutcome:
    done = bool(data.get("done", False))
    error = data.get("error")
    if error:
        return ExecutionOutcome.failed(
            RemoteError(
                code=int(error.get("code", 0)),
                message=str(error.get("message", "")),
                details=tuple(error.get("details", [])),
            ),
            completed=done,
        )
    return ExecutionOutcome.returned(
        (data.get("response") or {}).get("result"), completed=done
    )


def _parse_version(data: dict[str, Any]) -> VersionInfo:
    return VersionInfo(
        version_number=data.get("versionNumber", 0),
        description=data.get("description", ""),
        create_time=data.get("createTime", ""),
    )


def _parse_deployment(data: dict[str, Any]) -> DeploymentInfo:
    dc = data.get("deploymentConfig", {})
    return DeploymentInfo(
        deployment_id=data.get("deploymentId", ""),
        version_number=dc.get("versionNumber", 0),
        description=dc.get("description", ""),
        manifest_file_name=dc.get("manifestFileName", ""),
        update_time=data.get("updateTime", ""),
        entry_points=tuple(data.get("entryPoints", [])),
    )
