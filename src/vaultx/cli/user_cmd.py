"""Local account commands: add, login, passwd, ls."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ..models import Role
from ..vault import Vault
from ._common import EXPECTED_ERRORS, console, fail, home_option, open_home

ROLE_CHOICES = click.Choice([r.value for r in Role])


def _open_vault(home: str) -> Vault:
    vault = Vault(open_home(home))
    vault.store.ensure_default_admin()
    return vault


def register_user_commands(main: click.Group) -> None:
    """Register the user command group."""

    @main.group("user")
    def user_group():
        """Manage local vault accounts."""

    @user_group.command("add")
    @click.argument("username")
    @click.option(
        "--password", prompt=True, hide_input=True, confirmation_prompt=True,
        help="Account password (at most 72 bytes).",
    )
    @click.option("--role", type=ROLE_CHOICES, default=Role.USER.value, show_default=True)
    @home_option
    def user_add(username, password, role, home):
        """Create a local account."""
        vault = _open_vault(home)
        try:
            user = vault.add_user(username, password, Role(role))
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        console.print(f"  [green]Added[/] {user.role.value} [cyan]{user.username}[/] ({user.id})")

    @user_group.command("login")
    @click.argument("username")
    @click.option("--password", prompt=True, hide_input=True, help="Account password.")
    @home_option
    def user_login(username, password, home):
        """Check a username and password."""
        vault = _open_vault(home)
        user = vault.authenticate(username, password)
        if user is None:
            fail("Invalid credentials")
        console.print(f"  [green]Login successful[/] ({user.id}, {user.role.value})")

    @user_group.command("passwd")
    @click.argument("username")
    @click.option(
        "--password", prompt="New password", hide_input=True, confirmation_prompt=True,
        help="New password (at most 72 bytes).",
    )
    @home_option
    def user_passwd(username, password, home):
        """Change an account's password."""
        vault = _open_vault(home)
        try:
            vault.change_password(username, password)
        except EXPECTED_ERRORS as exc:
            fail(str(exc))
        console.print(f"  [green]Password updated[/] for {username}")

    @user_group.command("ls")
    @click.option("--json", "as_json", is_flag=True, help="Print accounts as JSON.")
    @home_option
    def user_ls(as_json, home):
        """List local accounts."""
        users = _open_vault(home).users()
        if as_json:
            click.echo(json.dumps(
                [{k: v for k, v in u.to_wire().items() if k != "passwordHash"} for u in users],
                indent=2,
            ))
            return

        table = Table(title="Accounts")
        table.add_column("Username", style="cyan")
        table.add_column("ID")
        table.add_column("Role")
        table.add_column("Created (UTC)")
        for u in users:
            table.add_row(
                u.username, u.id, u.role.value, u.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)
