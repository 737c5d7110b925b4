"""Permission commands: grant, revoke, ls."""

from __future__ import annotations

import click
from rich.table import Table

from ..models import Permission
from ..vault import Vault
from ._common import EXPECTED_ERRORS, console, fail, home_option, open_home

PERM_CHOICES = click.Choice([p.value for p in Permission])


def register_perm_commands(main: click.Group) -> None:
    """Register the perm command group."""

    @main.group("perm")
    def perm_group():
        """Grant and revoke read/write access to vault files."""

    @perm_group.command("grant")
    @click.argument("file_id")
    @click.argument("user_id")
    @click.argument("perm", type=PERM_CHOICES)
    @home_option
    def perm_grant(file_id, user_id, perm, home):
        """Grant PERM on FILE_ID to USER_ID."""
        vault = Vault(open_home(home))
        try:
            added = vault.grant(file_id, user_id, Permission(perm))
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        if added:
            console.print(f"  [green]Granted[/] {perm} on {file_id} to {user_id}")
        else:
            console.print(f"  [dim]{user_id} already has {perm} on {file_id}[/]")

    @perm_group.command("revoke")
    @click.argument("file_id")
    @click.argument("user_id")
    @click.argument("perm", type=PERM_CHOICES)
    @home_option
    def perm_revoke(file_id, user_id, perm, home):
        """Revoke PERM on FILE_ID from USER_ID."""
        vault = Vault(open_home(home))
        try:
            removed = vault.revoke(file_id, user_id, Permission(perm))
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        if removed:
            console.print(f"  [yellow]Revoked[/] {perm} on {file_id} from {user_id}")
        else:
            console.print(f"  [dim]{user_id} had no {perm} on {file_id}[/]")

    @perm_group.command("ls")
    @click.argument("file_id")
    @home_option
    def perm_ls(file_id, home):
        """List grants on FILE_ID."""
        vault = Vault(open_home(home))
        try:
            grants = vault.permissions(file_id)
        except EXPECTED_ERRORS as exc:
            fail(str(exc))

        if not grants:
            console.print("  [dim]No grants.[/]")
            return
        table = Table(title=f"Permissions on {file_id}")
        table.add_column("User", style="cyan")
        table.add_column("Permission")
        for g in grants:
            table.add_row(g.user_id, g.perm.value)
        console.print(table)
