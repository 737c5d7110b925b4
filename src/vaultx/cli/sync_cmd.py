"""Sync commands: remote, mirror, status."""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.markup import escape
from rich.panel import Panel

from ..config import load_config
from ..models import Session
from ..store import MetadataStore
from ..sync.engine import SyncReconciler, load_sync_state
from ..sync.mirror import DirectoryMirror
from ..sync.models import MirrorEvent, MirrorEventKind
from ..sync.transport import DirectoryTransport, HttpTransport, TransferFailure
from ._common import console, fail, home_option, logger, open_home


def _print_event(event: MirrorEvent) -> None:
    if event.kind == MirrorEventKind.ERROR:
        console.print(f"  [red]error[/] {event.encrypted_name}: {escape(event.error or '')}")
    elif event.updated:
        console.print(f"  [green]synced[/] {event.encrypted_name} ({event.updated} copies)")


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Keep vault replicas converged.

        Remote: last-writer-wins against the vault API.
        Mirror: newest copy wins across local replica directories.
        """

    @sync.command("remote")
    @click.option("--api-base", default=None, help="Vault API base URL.")
    @click.option("--username", default=None, help="API username.")
    @click.option("--password", default=None, help="API password (prompted if omitted).")
    @click.option(
        "--remote-dir", default=None, type=click.Path(file_okay=False),
        help="Use a directory as the remote store instead of the API.",
    )
    @click.option("--user-id", default=None, help="Principal id for --remote-dir.")
    @home_option
    def sync_remote(api_base, username, password, remote_dir, user_id, home):
        """Run one reconciliation pass against the remote store."""
        home_path = open_home(home)
        config = load_config(home_path)
        store = MetadataStore(home_path)

        session: Optional[Session]
        if remote_dir:
            if not user_id:
                fail("--user-id is required with --remote-dir")
            transport = DirectoryTransport(Path(remote_dir))
            session = Session(user_id=user_id, token=f"local:{user_id}")
        else:
            if not username:
                fail("--username is required for API sync")
            if password is None:
                password = click.prompt("API password", hide_input=True)
            transport = HttpTransport(api_base or config.api_base, config.request_timeout)
            try:
                session = transport.login(username, password)
            except TransferFailure as exc:
                fail(f"Login failed: {exc}")

        reconciler = SyncReconciler(store, transport, config.resolve_vault_dir(home_path))
        console.print(f"\n  Syncing via [cyan]{transport.name}[/]...")
        try:
            report = reconciler.run_sync(session)
        except TransferFailure as exc:
            fail(f"Sync failed: {exc}")

        if report is None:
            console.print("  [yellow]Sync skipped.[/]\n")
            return
        console.print(
            f"  [green]{len(report.downloaded)} downloaded[/], "
            f"[green]{len(report.uploaded)} uploaded[/], "
            f"[{'red' if report.failed else 'dim'}]{len(report.failed)} failed[/]"
        )
        for file_id, message in report.failed.items():
            console.print(f"    [red]{file_id}[/]: {escape(message)}")
        console.print()
        if report.failed:
            sys.exit(1)

    @sync.command("mirror")
    @click.argument("directories", nargs=-1, type=click.Path(file_okay=False))
    @click.option("--watch", is_flag=True, help="Keep running and sync on every change.")
    @click.option("--debounce-ms", default=None, type=int, help="Watch-mode quiet period.")
    @home_option
    def sync_mirror(directories, watch, debounce_ms, home):
        """Mirror the newest copy of every file across replica directories.

        Uses the configured replica_dirs when no DIRECTORIES are given.
        """
        home_path = open_home(home)
        config = load_config(home_path)
        dirs = [Path(d) for d in directories] or config.resolve_replica_dirs()
        if len(dirs) < 2:
            fail("Need at least two replica directories")

        mirror = DirectoryMirror(
            MetadataStore(home_path),
            dirs,
            debounce_ms=config.debounce_ms if debounce_ms is None else debounce_ms,
        )

        results = mirror.sync_all()
        copies = sum(results.values())
        console.print(
            f"\n  Mirrored [bold]{len(results)}[/] file(s) across "
            f"{len(mirror.directories)} replicas: [green]{copies} copies written[/]"
        )

        if not watch:
            console.print()
            return

        mirror.add_listener(_print_event)
        mirror.start_watching()
        console.print("  [dim]Watching for changes (Ctrl+C to stop)...[/]")
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Mirror watch interrupted")
        finally:
            mirror.stop_watching()
            console.print("\n  [dim]Stopped.[/]\n")

    @sync.command("status")
    @home_option
    def sync_status(home):
        """Show sync configuration and the last reconciliation."""
        home_path = open_home(home)
        config = load_config(home_path)
        state = load_sync_state(home_path)
        replicas = ", ".join(str(d) for d in config.resolve_replica_dirs()) or "[dim]none[/]"

        console.print()
        console.print(
            Panel(
                f"API: [cyan]{config.api_base}[/]\n"
                f"Vault dir: {config.resolve_vault_dir(home_path)}\n"
                f"Replicas: {replicas}\n"
                f"Last sync: {state.last_sync or '[dim]never[/]'}\n"
                f"Runs: [bold]{state.runs}[/]  "
                f"Downloads: {state.downloads}  Uploads: {state.uploads}  "
                f"Failures: {state.failures}\n"
                f"Last error: {escape(state.last_error) if state.last_error else '[dim]none[/]'}",
                title="VaultX Sync",
                border_style="magenta",
            )
        )
        console.print()
