"""Audit and configuration commands: logs, config show, config set-replicas."""

from __future__ import annotations

import json
from pathlib import Path

import click
import yaml
from rich.table import Table

from ..audit import DEFAULT_LIMIT, read_audit_log
from ..config import load_config, save_config
from ._common import console, home_option, open_home


def register_audit_commands(main: click.Group) -> None:
    """Register the logs command and the config group."""

    @main.command("logs")
    @click.option("--limit", default=DEFAULT_LIMIT, show_default=True, help="0 = all entries.")
    @click.option("--json", "as_json", is_flag=True, help="Print entries as JSON.")
    @home_option
    def logs(limit, as_json, home):
        """Show the audit log, newest first."""
        entries = read_audit_log(open_home(home), limit=limit)

        if as_json:
            click.echo(json.dumps([e.model_dump() for e in entries], indent=2))
            return
        if not entries:
            console.print("  [dim]Audit log is empty.[/]")
            return

        table = Table(title="Audit log")
        table.add_column("Time (UTC)", no_wrap=True)
        table.add_column("User", style="cyan")
        table.add_column("Action", style="bold")
        table.add_column("Details")
        for e in entries:
            table.add_row(e.timestamp[:19], e.user_id, e.action, e.details)
        console.print(table)

    @main.group("config")
    def config_group():
        """Inspect and edit the vault configuration."""

    @config_group.command("show")
    @home_option
    def config_show(home):
        """Print the effective configuration as YAML."""
        config = load_config(open_home(home))
        click.echo(yaml.dump(config.model_dump(mode="json"), default_flow_style=False))

    @config_group.command("set-replicas")
    @click.argument("directories", nargs=-1, required=True, type=click.Path(file_okay=False))
    @home_option
    def config_set_replicas(directories, home):
        """Set the replica directories used by `sync mirror`."""
        home_path = open_home(home)
        config = load_config(home_path)
        config.replica_dirs = [Path(d) for d in directories]
        save_config(home_path, config)
        console.print(f"  [green]Saved[/] {len(config.resolve_replica_dirs())} replica directories")
