"""conductor: terminal CLI for conductor session servers."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable

from conductor import __version__
from conductor.cli.api_client import APIError
from conductor.cli.prompts import DIM, RESET, ConsolePrompts, print_header, status_icon
from conductor.cli.terminal import TerminalRenderer, attach
from conductor.config import load_settings
from conductor.core.context import ClientContext
from conductor.core.supervisor import ConnectionSupervisor
from conductor.logging_config import setup_logging

Command = Callable[[ConnectionSupervisor, argparse.Namespace], Awaitable[int]]


def _fail(message: str) -> int:
    sys.stderr.write(f"conductor error: {message}\n")
    return 1


async def _cmd_endpoints(supervisor: ConnectionSupervisor, _args: argparse.Namespace) -> int:
    api = supervisor.context.api
    endpoints = supervisor.context.registry.endpoints
    healthy = await asyncio.gather(*(api.health(endpoint) for endpoint in endpoints))
    print_header("Endpoints")
    for endpoint, up in zip(endpoints, healthy):
        address = api.base_url(endpoint)
        marker = " (default)" if endpoint.is_local else ""
        print(f"  {status_icon(up)} {endpoint.id:<10} {endpoint.name}{marker}  {DIM}{address}{RESET}")
    return 0


async def _cmd_add_endpoint(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    endpoint = await supervisor.add_endpoint(args.name, args.url)
    if endpoint is None:
        return _fail("endpoint not added")
    print(f"Added {endpoint.name} as {endpoint.id}")
    return 0


async def _cmd_remove_endpoint(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    if not await supervisor.remove_endpoint(args.endpoint):
        return _fail(f"no removable endpoint {args.endpoint}")
    return 0


async def _cmd_login(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    if not await supervisor.reauthenticate(args.endpoint):
        return _fail("login failed")
    return 0


async def _cmd_sessions(supervisor: ConnectionSupervisor, _args: argparse.Namespace) -> int:
    snapshot = await supervisor.refresh()
    for group in snapshot.groups.values():
        endpoint = group.endpoint
        print_header(f"{endpoint.name} ({endpoint.id})")
        if not endpoint.connected:
            print(f"  {status_icon(False)} unreachable")
            continue
        if not group.sessions:
            print(f"  {DIM}no sessions{RESET}")
        for session in group.sessions:
            print(f"  {session.id:<12} {session.display_name}  {DIM}{session.created_at or ''}{RESET}")
    return 0


async def _cmd_new(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    await supervisor.refresh()
    session_id = await supervisor.create_session(args.endpoint, focus=False)
    if session_id is None:
        return _fail("session not created")
    endpoint_id = args.endpoint or _owner_of(supervisor, session_id)
    print(f"Created session {session_id} on {endpoint_id}")
    if args.no_attach or endpoint_id is None:
        return 0
    await attach(supervisor, endpoint_id, session_id)
    return 0


def _owner_of(supervisor: ConnectionSupervisor, session_id: str) -> str | None:
    for endpoint_id, group in supervisor.directory.snapshot.groups.items():
        if any(session.id == session_id for session in group.sessions):
            return endpoint_id
    return None


async def _cmd_rename(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    await supervisor.refresh()
    if not await supervisor.rename_session(args.endpoint, args.session, args.name):
        return _fail("session not renamed")
    return 0


async def _cmd_delete(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    await supervisor.refresh()
    if not await supervisor.delete_session(args.endpoint, args.session):
        return _fail("session not deleted")
    return 0


async def _cmd_attach(supervisor: ConnectionSupervisor, args: argparse.Namespace) -> int:
    # Each process starts logged out; refresh runs the login before the stream opens.
    await supervisor.refresh()
    if not await attach(supervisor, args.endpoint, args.session):
        return _fail(f"unknown endpoint {args.endpoint}")
    return 0


COMMANDS: dict[str, Command] = {
    "endpoints": _cmd_endpoints,
    "add-endpoint": _cmd_add_endpoint,
    "remove-endpoint": _cmd_remove_endpoint,
    "login": _cmd_login,
    "sessions": _cmd_sessions,
    "new": _cmd_new,
    "rename": _cmd_rename,
    "delete": _cmd_delete,
    "attach": _cmd_attach,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conductor", description="Conductor terminal session client")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to conductor.yml")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("endpoints", help="List known endpoints")

    add = sub.add_parser("add-endpoint", help="Authenticate and register a remote endpoint")
    add.add_argument("name")
    add.add_argument("url", help="Base URL, e.g. http://192.168.1.50:8080")

    remove = sub.add_parser("remove-endpoint", help="Forget a remote endpoint")
    remove.add_argument("endpoint", help="Endpoint id")

    login = sub.add_parser("login", help="Log in to an endpoint again")
    login.add_argument("endpoint", nargs="?", default="local", help="Endpoint id (default: local)")

    sub.add_parser("sessions", help="List sessions on all endpoints")

    new = sub.add_parser("new", help="Create a session and attach to it")
    new.add_argument("--endpoint", default=None, help="Endpoint id (prompted when several are reachable)")
    new.add_argument("--no-attach", action="store_true", help="Create without attaching")

    rename = sub.add_parser("rename", help="Rename a session")
    rename.add_argument("endpoint")
    rename.add_argument("session")
    rename.add_argument("name", nargs="?", default=None)

    delete = sub.add_parser("delete", help="Delete a session")
    delete.add_argument("endpoint")
    delete.add_argument("session")

    attach_cmd = sub.add_parser("attach", help="Attach this terminal to a session (Ctrl-] detaches)")
    attach_cmd.add_argument("endpoint")
    attach_cmd.add_argument("session")

    return parser


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.log_level, Path(settings.state_dir).expanduser() / "logs")

    context = ClientContext.create(settings)
    await context.open()
    supervisor = ConnectionSupervisor(context, ConsolePrompts(), TerminalRenderer)
    try:
        return await COMMANDS[args.command](supervisor, args)
    except APIError as e:
        return _fail(str(e))
    except RuntimeError as e:
        return _fail(str(e))
    finally:
        await supervisor.close()
        await context.close()


def main() -> None:
    args = build_parser().parse_args()
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
