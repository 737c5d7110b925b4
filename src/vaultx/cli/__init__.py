"""
VaultX CLI -- the encrypted vault command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module and is registered on the main
Click group via its register function.

Entry point: vaultx.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="vaultx")
@click.option("-v", "--verbose", is_flag=True, help="Echo logs to stderr.")
def main(verbose):
    """VaultX -- encrypted files, synced everywhere."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .audit_cmd import register_audit_commands
from .file_cmd import register_file_commands
from .perm_cmd import register_perm_commands
from .sync_cmd import register_sync_commands
from .user_cmd import register_user_commands

register_file_commands(main)
register_perm_commands(main)
register_sync_commands(main)
register_audit_commands(main)
register_user_commands(main)
