"""ProjectClient - typed operations on remote Apps Script projects.

Every remote failure is re-raised with the project id and operation name
attached, except UnauthenticatedError and ReauthorizationRequiredError,
which pass through unchanged so callers can tell "fix my credentials" apart
from "this request failed".
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from loguru import logger

from scriptsync.errors import (
    FetchFailedError,
    ProjectOperationError,
    TransportError,
    UpdateRejectedError,
)
from scriptsync.transport import (
    DEFAULT_MANIFEST,
    DeploymentInfo,
    ExecutionOutcome,
    ProcessInfo,
    ProjectContent,
    ProjectFile,
    ProjectMetadata,
    ProjectPage,
    ProjectSnapshot,
    Transport,
    VersionInfo,
)


class ProjectClient:
    """Client for reading, replacing and running Apps Script projects.

    Example:
        >>> http = create_http_client()
        >>> auth = AuthSession(CredentialStore("~/.config/scriptsync"), http)
        >>> client = ProjectClient(AppsScriptTransport(auth, http))
        >>> snapshot = await client.get_project("1abc...")
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    # --- Reads ---

    async def list_projects(
        self,
        page_size: int = 50,
        page_token: str | None = None,
        search_query: str | None = None,
    ) -> ProjectPage:
        """List script projects, one page at a time."""
        with _remote_call(FetchFailedError, "", "list_projects"):
            return await self._transport.list_projects(
                page_size, page_token, search_query
            )

    async def get_project(self, project_id: str) -> ProjectSnapshot:
        """Fetch metadata and files of a project.

        The two reads run concurrently. If either fails the whole call
        fails; a partial snapshot is never returned.

        Raises:
            FetchFailedError: If either read fails.
        """
        logger.debug("Fetching project {}", project_id)
        metadata_task = asyncio.ensure_future(self._transport.get_metadata(project_id))
        content_task = asyncio.ensure_future(self._transport.get_content(project_id))
        try:
            with _remote_call(FetchFailedError, project_id, "get_project"):
                metadata, content = await asyncio.gather(metadata_task, content_task)
        finally:
            for task in (metadata_task, content_task):
                if not task.done():
                    task.cancel()
        return _snapshot(project_id, metadata, content)

    # --- Writes ---

    async def update_project(
        self, project_id: str, files: Sequence[ProjectFile]
    ) -> ProjectSnapshot:
        """Replace the project's whole file set with `files`.

        File names must be unique; the remote service is authoritative and
        either applies the full replacement or none of it.

        Returns:
            Snapshot of the state the remote service accepted.

        Raises:
            UpdateRejectedError: If the replacement is refused.
            FetchFailedError: If the replacement succeeded but the refreshed
                metadata could not be read.
        """
        logger.info("Replacing {} files in project {}", len(files), project_id)
        with _remote_call(UpdateRejectedError, project_id, "update_project"):
            content = await self._transport.update_content(project_id, list(files))
        with _remote_call(FetchFailedError, project_id, "update_project"):
            metadata = await self._transport.get_metadata(project_id)
        return _snapshot(project_id, metadata, content)

    async def create_project(
        self,
        title: str,
        files: Sequence[ProjectFile] | None = None,
        parent_id: str | None = None,
    ) -> ProjectSnapshot:
        """Create a project, optionally bound to a Drive file, and seed its files."""
        with _remote_call(UpdateRejectedError, "", "create_project"):
            metadata = await self._transport.create_project(title, parent_id)
        logger.info("Created project {} ({})", metadata.script_id, title)
        if files:
            return await self.update_project(metadata.script_id, files)
        with _remote_call(FetchFailedError, metadata.script_id, "create_project"):
            content = await self._transport.get_content(metadata.script_id)
        return _snapshot(metadata.script_id, metadata, content)

    # --- Execution ---

    async def execute_function(
        self,
        project_id: str,
        function_name: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> ExecutionOutcome:
        """Run a function in the project.

        Args:
            project_id: The script project ID.
            function_name: Name of the function to execute.
            parameters: Optional list of arguments (primitives only).
            dev_mode: If True, runs the saved content instead of the
                latest deployment.

        Returns:
            ExecutionOutcome. Errors reported inside a successful response
            come back as remote_error; unreachable calls as transport_failure.
        """
        try:
            outcome = await self._transport.run_function(
                project_id, function_name, parameters, dev_mode
            )
        except TransportError as e:
            logger.warning("Execution of {} in {} failed: {}", function_name, project_id, e)
            return ExecutionOutcome.unreachable(f"execute_function {project_id}: {e}")
        if outcome.remote_error is not None:
            logger.warning(
                "Function {} in {} reported error {}: {}",
                function_name,
                project_id,
                outcome.remote_error.code,
                outcome.remote_error.script_message,
            )
        return outcome

    async def list_processes(
        self, project_id: str | None = None, limit: int = 20
    ) -> list[ProcessInfo]:
        """List recent executions, for one project or all of them."""
        with _remote_call(FetchFailedError, project_id or "", "list_processes"):
            return await self._transport.list_processes(project_id, limit)

    # --- Versions ---

    async def create_version(
        self, project_id: str, description: str | None = None
    ) -> VersionInfo:
        """Create an immutable version snapshot."""
        with _remote_call(UpdateRejectedError, project_id, "create_version"):
            return await self._transport.create_version(project_id, description)

    async def list_versions(self, project_id: str) -> list[VersionInfo]:
        """List all versions."""
        with _remote_call(FetchFailedError, project_id, "list_versions"):
            return await self._transport.list_versions(project_id)

    # --- Deployments ---

    async def create_deployment(
        self,
        project_id: str,
        version_number: int | None = None,
        description: str | None = None,
        manifest_file_name: str | None = None,
    ) -> DeploymentInfo:
        """Create a deployment.

        Without a version_number a new version is created first from the
        project's current content.
        """
        with _remote_call(UpdateRejectedError, project_id, "create_deployment"):
            if version_number is None:
                version = await self._transport.create_version(project_id, description)
                version_number = version.version_number
                logger.info("Created version {} of {}", version_number, project_id)
            return await self._transport.create_deployment(
                project_id,
                version_number,
                description,
                manifest_file_name or DEFAULT_MANIFEST,
            )

    async def list_deployments(self, project_id: str) -> list[DeploymentInfo]:
        """List all deployments."""
        with _remote_call(FetchFailedError, project_id, "list_deployments"):
            return await self._transport.list_deployments(project_id)

    async def close(self) -> None:
        await self._transport.close()


# --- Module-level helpers ---


@contextmanager
def _remote_call(
    error_cls: type[ProjectOperationError], project_id: str, operation: str
) -> Iterator[None]:
    """Wrap transport errors with the project and operation they belong to."""
    try:
        yield
    except TransportError as e:
        raise error_cls(project_id, operation, e) from e


def _snapshot(
    project_id: str, metadata: ProjectMetadata, content: ProjectContent
) -> ProjectSnapshot:
    return ProjectSnapshot(
        project_id=metadata.script_id or content.script_id or project_id,
        title=metadata.title,
        created_at=metadata.create_time,
        updated_at=metadata.update_time,
        files=content.files,
    )
