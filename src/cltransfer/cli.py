from __future__ import annotations

import argparse
import logging
import socket
import sys
from typing import TYPE_CHECKING

import uvicorn
from rich.live import Live
from rich.table import Table

from cltransfer.client.api import ContentLibraryClient
from cltransfer.client.orchestrator import (
    FileSource,
    UpdateSessionOrchestrator,
    resolve_item,
)
from cltransfer.client.settings import TransferSettings
from cltransfer.errors import ContentLibraryError, RemoteUnavailableError
from cltransfer.log import (
    console,
    make_file_progress,
    make_overall_progress,
    setup_logging,
)
from cltransfer.server.app import create_app
from cltransfer.server.models import SessionFileInfo, SourceType

if TYPE_CHECKING:
    from rich.progress import TaskID

DEFAULT_PORT = 1320


def parse_server(target: str) -> str:
    """Parse a server string into a base URL.

    Accepts formats like:
      - host              → http://host:1320
      - host:port         → http://host:port
      - http://host:port  → http://host:port  (passed through)
      - https://host:port → https://host:port (passed through)
    """
    if target.startswith(("http://", "https://")):
        return target.rstrip("/")

    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            console.print(f"[red]Invalid port in server address: {target}")
            sys.exit(1)
        return f"http://{host}:{port}"
    return f"http://{target}:{DEFAULT_PORT}"


def cmd_serve(args: argparse.Namespace) -> None:
    setup_logging()

    # Fail fast if the port is already in use.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((args.host, args.port))
        except OSError:
            console.print(
                f"[red]Port {args.port} is already in use. "
                "Is another cltransfer server running?"
            )
            sys.exit(1)

    app = create_app(storage_dir=args.storage_dir, idle_timeout=args.idle_timeout)
    console.print(
        f"[bold green]cltransfer server[/] starting on "
        f"[cyan]{args.host}:{args.port}[/] "
        f"(storage={args.storage_dir}, idle-timeout={args.idle_timeout}s)"
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


class TransferProgressDisplay:
    """Rich-based implementation of TransferProgressCallback for the CLI."""

    def __init__(self, total_files: int) -> None:
        self.overall = make_overall_progress()
        self.files = make_file_progress()
        self.overall_task = self.overall.add_task("Transferring", total=total_files)
        self.table = Table.grid()
        self.table.add_row(self.overall)
        self.table.add_row(self.files)
        self._task_ids: dict[str, TaskID] = {}

    def file_started(
        self, name: str, source_type: SourceType, total_bytes: int | None,
    ) -> None:
        # Pull progress is driven by the server; the bar stays indeterminate.
        total = 100 if source_type == SourceType.PUSH else None
        self._task_ids[name] = self.files.add_task(
            name, total=total, mode=source_type.value,
        )

    def file_progress(self, name: str, percent: float) -> None:
        self.files.update(self._task_ids[name], completed=percent)

    def file_done(self, name: str, info: SessionFileInfo | None) -> None:
        task_id = self._task_ids[name]
        self.files.update(
            task_id, description=f"[green]{name}", total=100, completed=100,
        )
        self.overall.advance(self.overall_task)

    def file_error(self, name: str, exc: BaseException) -> None:
        task_id = self._task_ids[name]
        self.files.update(task_id, description=f"[red]{name}")
        self.overall.advance(self.overall_task)


def _settings(args: argparse.Namespace) -> TransferSettings:
    return TransferSettings(
        poll_interval=args.poll_interval,
        keepalive_interval=args.keepalive_interval,
        chunk_size=args.chunk_size,
    )


def _source_type(args: argparse.Namespace) -> SourceType | None:
    if args.pull:
        return SourceType.PULL
    if args.push:
        return SourceType.PUSH
    return None


def cmd_upload(args: argparse.Namespace) -> None:
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if len(args.targets) < 2:
        console.print("[red]Usage: cltransfer upload <locators...> <library/item>")
        sys.exit(1)

    *locators, item_ref = args.targets
    source_type = _source_type(args)
    if args.name and len(locators) > 1:
        console.print("[red]--name can only be used with a single source")
        sys.exit(1)
    sources = [
        FileSource(locator, name=args.name, source_type=source_type)
        for locator in locators
    ]

    try:
        settings = _settings(args)
    except ValueError as exc:
        console.print(f"[red]Invalid transfer settings: {exc}")
        sys.exit(1)

    display = TransferProgressDisplay(len(sources))
    with ContentLibraryClient(parse_server(args.server)) as api:
        orchestrator = UpdateSessionOrchestrator(
            api, settings=settings, progress=display,
        )
        try:
            with Live(display.table, console=console, refresh_per_second=10):
                session = orchestrator.add_files(item_ref, sources, wait=args.wait)
        except RemoteUnavailableError as exc:
            console.print(f"[red]Cannot reach server at {api.base_url}: {exc.detail}")
            sys.exit(1)
        except (ContentLibraryError, OSError, ValueError) as exc:
            console.print(f"[red]Upload failed: {exc}")
            sys.exit(1)

    console.print(
        f"\n[green]{len(sources)} file(s) added to {item_ref}[/] "
        f"(session {session.id}, state={session.state.value})"
    )


def cmd_remove(args: argparse.Namespace) -> None:
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    with ContentLibraryClient(parse_server(args.server)) as api:
        orchestrator = UpdateSessionOrchestrator(api)
        try:
            session = orchestrator.remove_files(args.item, args.names)
        except RemoteUnavailableError as exc:
            console.print(f"[red]Cannot reach server at {api.base_url}: {exc.detail}")
            sys.exit(1)
        except ContentLibraryError as exc:
            console.print(f"[red]Remove failed: {exc}")
            sys.exit(1)

    console.print(
        f"[green]Removed {len(args.names)} file(s) from {args.item}[/] "
        f"(session {session.id})"
    )


def cmd_info(args: argparse.Namespace) -> None:
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    with ContentLibraryClient(parse_server(args.server)) as api:
        try:
            handle = resolve_item(api, args.item)
            item = api.get_item(handle.id)
        except ContentLibraryError as exc:
            console.print(f"[red]{exc}")
            sys.exit(1)

    table = Table(title=f"{args.item} (content version {item.content_version})")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("SHA-1")
    for f in sorted(item.files, key=lambda f: f.name):
        table.add_row(f.name, str(f.size), f.checksum or "")
    console.print(table)


def _add_client_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--server",
        "-s",
        default=f"localhost:{DEFAULT_PORT}",
        help=f"Server host[:port] or URL (default: localhost:{DEFAULT_PORT})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="cltransfer",
        description="Add and remove content library item files through update sessions",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    lp = sub.add_parser("serve", help="Start the reference content library server")
    lp.add_argument("--host", default="0.0.0.0", help="Bind address")
    lp.add_argument("--port", type=int, default=DEFAULT_PORT, help="Listen port")
    lp.add_argument(
        "--storage-dir",
        default="./library",
        help="Directory for item content and session staging",
    )
    lp.add_argument(
        "--idle-timeout",
        type=float,
        default=300.0,
        help="Seconds before an idle update session expires (default: 300)",
    )
    lp.set_defaults(func=cmd_serve)

    # --- upload ---
    sp = sub.add_parser("upload", help="Add files to a library item")
    sp.add_argument(
        "targets",
        nargs="+",
        help="Source locators (paths, ds://, http(s)://) followed by library/item",
    )
    _add_client_options(sp)
    mode = sp.add_mutually_exclusive_group()
    mode.add_argument("--pull", action="store_true", help="Have the server fetch the sources")
    mode.add_argument("--push", action="store_true", help="Upload the sources from here")
    sp.add_argument("--name", "-n", help="Item file name (single source only)")
    sp.add_argument(
        "--wait",
        "-w",
        action="store_true",
        help="Wait for pull transfers to finish",
    )
    sp.add_argument(
        "--chunk-size",
        type=int,
        default=1_048_576,
        help="Upload chunk size in bytes (default: 1048576)",
    )
    sp.add_argument(
        "--poll-interval",
        type=float,
        default=1.0,
        help="Seconds between progress observations (default: 1)",
    )
    sp.add_argument(
        "--keepalive-interval",
        type=float,
        default=60.0,
        help="Seconds between session keepalives (default: 60)",
    )
    sp.set_defaults(func=cmd_upload)

    # --- rm ---
    rp = sub.add_parser("rm", help="Remove files from a library item")
    rp.add_argument("item", help="library/item or item id")
    rp.add_argument("names", nargs="+", help="Exact file names to remove")
    _add_client_options(rp)
    rp.set_defaults(func=cmd_remove)

    # --- info ---
    ip = sub.add_parser("info", help="Show a library item's files")
    ip.add_argument("item", help="library/item or item id")
    _add_client_options(ip)
    ip.set_defaults(func=cmd_info)

    args = parser.parse_args()
    args.func(args)
