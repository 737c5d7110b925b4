"""File commands: add, get, ls, rm, name."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ..vault import Vault
from ._common import EXPECTED_ERRORS, console, fail, home_option, open_home


def register_file_commands(main: click.Group) -> None:
    """Register the file command group."""

    @main.group("file")
    def file_group():
        """Encrypt, list, extract, and remove vault files."""

    @file_group.command("add")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    @click.option("--owner", required=True, help="Owner user id.")
    @click.option(
        "--password", prompt=True, hide_input=True, confirmation_prompt=True,
        help="Encryption password.",
    )
    @home_option
    def file_add(path, owner, password, home):
        """Encrypt a file into the vault and register it."""
        vault = Vault(open_home(home))
        try:
            record = vault.add_file(Path(path), owner_id=owner, password=password)
        except EXPECTED_ERRORS as exc:
            fail(str(exc))

        console.print(f"\n  [green]Added[/] [cyan]{record.original_name}[/]")
        console.print(f"  id:   [bold]{record.id}[/]")
        console.print(f"  blob: [dim]{vault.blob_path(record)}[/]\n")

    @file_group.command("get")
    @click.argument("file_id")
    @click.option(
        "--dest", required=True, type=click.Path(),
        help="Output file, or a directory to keep the original name.",
    )
    @click.option("--password", prompt=True, hide_input=True, help="Decryption password.")
    @home_option
    def file_get(file_id, dest, password, home):
        """Decrypt a vault file."""
        vault = Vault(open_home(home))
        try:
            written = vault.extract_file(file_id, password, Path(dest))
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        console.print(f"  [green]Saved to[/] {written}")

    @file_group.command("ls")
    @click.option("--user", default=None, help="Only files this user owns or was granted.")
    @click.option("--json", "as_json", is_flag=True, help="Print records as JSON.")
    @home_option
    def file_ls(user: Optional[str], as_json: bool, home):
        """List vault files."""
        vault = Vault(open_home(home))
        records = vault.list_files(user)

        if as_json:
            click.echo(json.dumps([r.to_wire() for r in records], indent=2))
            return
        if not records:
            console.print("  [dim]No files.[/]")
            return

        table = Table(title="Vault files")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Owner")
        table.add_column("Version", justify="right")
        table.add_column("Modified (UTC)")
        for r in records:
            table.add_row(
                r.id,
                r.original_name,
                r.owner_id,
                str(r.version),
                r.last_modified_utc.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)

    @file_group.command("rm")
    @click.argument("file_id")
    @click.option("--user", required=True, help="User performing the deletion.")
    @home_option
    def file_rm(file_id, user, home):
        """Delete a file record and its local blob."""
        vault = Vault(open_home(home))
        try:
            record = vault.remove_file(file_id, user)
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        console.print(f"  [yellow]Removed[/] {record.original_name} ({record.id})")

    @file_group.command("name")
    @click.argument("file_id")
    @click.option("--password", prompt=True, hide_input=True, help="Decryption password.")
    @home_option
    def file_name(file_id, password, home):
        """Decrypt the file name stored in a blob name."""
        vault = Vault(open_home(home))
        try:
            name = vault.reveal_name(file_id, password)
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        click.echo(name)
