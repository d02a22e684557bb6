"""CLI entry point for scriptsync.

Usage:
    python -m scriptsync setup
    python -m scriptsync login
    python -m scriptsync status
    python -m scriptsync list [--search text] [--page-size N] [--page-token T]
    python -m scriptsync pull <script_id_or_url> [output_dir]
    python -m scriptsync push <folder>
    python -m scriptsync run <script_id_or_url> <function> [--arg json]... [--deployed]
    python -m scriptsync deploy <script_id_or_url> [--version N] [--description desc]
    python -m scriptsync logs [<script_id_or_url>] [--limit N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import re
import sys
import urllib.parse
import webbrowser
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from loguru import logger

from scriptsync.auth import AuthSession, AuthState
from scriptsync.client import ProjectClient
from scriptsync.config import Settings, get_settings
from scriptsync.errors import (
    ReauthorizationRequiredError,
    ScriptSyncError,
    UnauthenticatedError,
)
from scriptsync.local import read_project_files, read_script_id, write_snapshot
from scriptsync.logging import setup_logging
from scriptsync.store import AppRegistration, CredentialStore
from scriptsync.transport import AppsScriptTransport, create_http_client

DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth2callback"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_REAUTH = 2


def parse_script_id(id_or_url: str) -> str:
    """Extract script ID from a URL or return as-is.

    Supports URLs like:
      https://script.google.com/d/SCRIPT_ID/edit
      https://script.google.com/home/projects/SCRIPT_ID/edit
    """
    patterns = [
        r"script\.google\.com/d/([a-zA-Z0-9_-]+)",
        r"script\.google\.com/home/projects/([a-zA-Z0-9_-]+)",
        r"script\.google\.com/macros/d/([a-zA-Z0-9_-]+)",
    ]
    for pattern in patterns:
        match = re.search(pattern, id_or_url)
        if match:
            return match.group(1)
    return id_or_url


def parse_auth_code(value: str) -> str:
    """Accept either a bare code or the full redirect URL containing it."""
    value = value.strip()
    if "code=" in value:
        query = urllib.parse.urlparse(value).query or value
        params = urllib.parse.parse_qs(query)
        if "code" in params:
            return params["code"][0]
    return value


# --- Wiring ---


async def _with_client(
    settings: Settings,
    action: Callable[[AuthSession, ProjectClient], Awaitable[int]],
) -> int:
    """Build the shared HTTP client, session and project client, then run action."""
    http_client = create_http_client(settings.http_timeout)
    store = CredentialStore(settings.config_dir)
    auth = AuthSession.from_settings(settings, store, http_client)
    client = ProjectClient(AppsScriptTransport(auth, http_client))
    try:
        return await action(auth, client)
    except (UnauthenticatedError, ReauthorizationRequiredError) as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'scriptsync login' to authorize again.", file=sys.stderr)
        return EXIT_REAUTH
    except ScriptSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        await client.close()


# --- Command handlers ---


def cmd_setup(args: argparse.Namespace, settings: Settings) -> int:
    """Prompt for OAuth client credentials and write config.json."""
    print("scriptsync - OAuth2 setup")
    print("=" * 40)
    client_id = args.client_id or input("OAuth2 Client ID: ").strip()
    client_secret = args.client_secret or input("OAuth2 Client Secret: ").strip()
    if not client_id or not client_secret:
        print("Error: client ID and secret are required", file=sys.stderr)
        return EXIT_FAILURE

    store = CredentialStore(settings.config_dir)
    store.save_registration(
        AppRegistration(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=args.redirect_uri,
            token_path=settings.default_token_path,
        )
    )
    print(f"Configuration saved to {store.config_path}")
    print("Next: run 'scriptsync login'")
    return EXIT_OK


async def cmd_login(args: argparse.Namespace, settings: Settings) -> int:
    """Run the interactive authorization-code flow."""

    async def action(auth: AuthSession, _client: ProjectClient) -> int:
        url = auth.authorize()
        print("\n" + "=" * 60)
        print("AUTHORIZATION REQUIRED")
        print("=" * 60)
        print(f"\nOpen this URL in your browser:\n\n  {url}\n")
        if not args.no_browser and webbrowser.open(url):
            print("(Browser opened automatically)")
        code = parse_auth_code(
            input("Paste the code (or the full redirect URL) here: ")
        )
        if not code:
            print("Error: no authorization code given", file=sys.stderr)
            return EXIT_FAILURE
        await auth.complete_authorization(code)
        print("\nAuthorization successful!")
        return EXIT_OK

    return await _with_client(settings, action)


def cmd_status(_args: argparse.Namespace, settings: Settings) -> int:
    """Show whether credentials are configured and usable."""
    store = CredentialStore(settings.config_dir)
    http_client = create_http_client(settings.http_timeout)
    auth = AuthSession.from_settings(settings, store, http_client)
    try:
        state = auth.state
        print(f"Config: {store.config_path}")
        print(f"State: {state.value}")
        if state in (AuthState.AUTHORIZED, AuthState.EXPIRED):
            token = store.load_token()
            assert token is not None
            print(f"Token file: {store.token_path}")
            print(f"Access token expires in: {token.expires_in_seconds()} seconds")
            print(f"Refresh token: {'present' if token.refresh_token else 'missing'}")
            print(f"Scopes: {', '.join(sorted(token.scope))}")
        print(f"Authenticated: {'yes' if auth.is_authenticated() else 'no'}")
    except ScriptSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        asyncio.run(http_client.aclose())
    return EXIT_OK


async def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    """List script projects."""

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        page = await client.list_projects(args.page_size, args.page_token, args.search)
        if not page.projects:
            print("No projects found.")
        for p in page.projects:
            print(f"{p.project_id}  {p.updated_at:<24}  {p.title}")
        if page.next_page_token:
            print(f"\nNext page: --page-token {page.next_page_token}")
        return EXIT_OK

    return await _with_client(settings, action)


async def cmd_pull(args: argparse.Namespace, settings: Settings) -> int:
    """Pull a script project to local files."""
    script_id = parse_script_id(args.script)
    output = Path(args.output) if args.output else Path() / script_id

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        print(f"Pulling script project: {script_id}")
        snapshot = await client.get_project(script_id)
        files = write_snapshot(snapshot, output)
        print(f"\nWrote {len(files)} files to {output}:")
        for path in files:
            print(f"  {path}")
        return EXIT_OK

    return await _with_client(settings, action)


async def cmd_push(args: argparse.Namespace, settings: Settings) -> int:
    """Replace the remote project's files with the local folder's files."""
    folder = Path(args.folder)
    try:
        script_id = read_script_id(folder)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    files = read_project_files(folder)
    if not files:
        print(f"Error: no script files found in {folder}", file=sys.stderr)
        return EXIT_FAILURE

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        print(f"Pushing {len(files)} files to {script_id}")
        snapshot = await client.update_project(script_id, files)
        write_snapshot(snapshot, folder)
        print(f"Pushed. Remote now has {len(snapshot.files)} files.")
        return EXIT_OK

    return await _with_client(settings, action)


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Execute a function and print its return value."""
    script_id = parse_script_id(args.script)
    parameters: list[Any] = []
    for raw in args.arg or []:
        try:
            parameters.append(json.loads(raw))
        except json.JSONDecodeError:
            parameters.append(raw)

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        outcome = await client.execute_function(
            script_id, args.function, parameters or None, dev_mode=not args.deployed
        )
        if outcome.transport_failure is not None:
            print(f"Error: {outcome.transport_failure}", file=sys.stderr)
            return EXIT_FAILURE
        if outcome.remote_error is not None:
            err = outcome.remote_error
            print(f"Script error ({err.code}): {err.script_message}", file=sys.stderr)
            for detail in err.details:
                for frame in detail.get("scriptStackTraceElements", []):
                    print(
                        f"  at {frame.get('function', '?')} "
                        f"(line {frame.get('lineNumber', '?')})",
                        file=sys.stderr,
                    )
            return EXIT_FAILURE
        print(json.dumps(outcome.return_value, indent=2))
        return EXIT_OK

    return await _with_client(settings, action)


async def cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    """Create a deployment, creating a version first if none is given."""
    script_id = parse_script_id(args.script)

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        deployment = await client.create_deployment(
            script_id, args.version, args.description, args.manifest
        )
        print(f"Deployment: {deployment.deployment_id}")
        print(f"Version: {deployment.version_number}")
        for entry in deployment.entry_points:
            web_app = entry.get("webApp")
            if web_app and web_app.get("url"):
                print(f"Web app URL: {web_app['url']}")
        return EXIT_OK

    return await _with_client(settings, action)


async def cmd_logs(args: argparse.Namespace, settings: Settings) -> int:
    """Show recent executions."""
    script_id = parse_script_id(args.script) if args.script else None

    async def action(_auth: AuthSession, client: ProjectClient) -> int:
        processes = await client.list_processes(script_id, args.limit)
        if not processes:
            print("No executions found.")
        for p in processes:
            print(
                f"{p.start_time:<28} {p.process_status:<10} "
                f"{p.function_name} {p.duration}"
            )
        return EXIT_OK

    return await _with_client(settings, action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scriptsync",
        description="Sync and run Google Apps Script projects",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("setup", help="Store OAuth client credentials")
    p.add_argument("--client-id")
    p.add_argument("--client-secret")
    p.add_argument("--redirect-uri", default=DEFAULT_REDIRECT_URI)

    p = sub.add_parser("login", help="Authorize access to your Apps Script projects")
    p.add_argument("--no-browser", action="store_true", help="Only print the URL")

    sub.add_parser("status", help="Show authorization status")

    p = sub.add_parser("list", help="List script projects")
    p.add_argument("--search", help="Only projects whose name contains this text")
    p.add_argument("--page-size", type=int, default=50)
    p.add_argument("--page-token")

    p = sub.add_parser("pull", help="Download a project's files")
    p.add_argument("script", help="Script ID or URL")
    p.add_argument("output", nargs="?", help="Output folder (default: ./<script_id>)")

    p = sub.add_parser("push", help="Replace a project's files with local ones")
    p.add_argument("folder", help="Folder created by pull")

    p = sub.add_parser("run", help="Execute a function")
    p.add_argument("script", help="Script ID or URL")
    p.add_argument("function", help="Function name")
    p.add_argument("--arg", action="append", help="Argument (JSON or plain string)")
    p.add_argument(
        "--deployed", action="store_true", help="Run the deployed code, not saved code"
    )

    p = sub.add_parser("deploy", help="Create a deployment")
    p.add_argument("script", help="Script ID or URL")
    p.add_argument("--version", type=int, help="Existing version (default: new one)")
    p.add_argument("--description")
    p.add_argument("--manifest", help="Manifest file name (default: appsscript)")

    p = sub.add_parser("logs", help="Show recent executions")
    p.add_argument("script", nargs="?", help="Script ID or URL")
    p.add_argument("--limit", type=int, default=20)

    return parser


ASYNC_COMMANDS = {
    "login": cmd_login,
    "list": cmd_list,
    "pull": cmd_pull,
    "push": cmd_push,
    "run": cmd_run,
    "deploy": cmd_deploy,
    "logs": cmd_logs,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        json_logs=settings.json_logs,
        log_level="DEBUG" if args.verbose else settings.log_level,
    )
    logger.debug("Using config directory {}", settings.config_dir)

    if args.command == "setup":
        return cmd_setup(args, settings)
    if args.command == "status":
        return cmd_status(args, settings)
    return asyncio.run(ASYNC_COMMANDS[args.command](args, settings))


if __name__ == "__main__":
    sys.exit(main())
