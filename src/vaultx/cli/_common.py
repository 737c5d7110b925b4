"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, and the error
handling every command uses to turn vault errors into exit status 1.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from .. import VAULT_HOME
from ..kdf import CryptoError
from ..store import DuplicateRecord, RecordNotFound, UnknownUser
from ..sync.transport import TransferFailure

console = Console()
logger = logging.getLogger("vaultx.cli")

LOG_DIR = "logs"
LOG_FILE = "vaultx.log"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

EXPECTED_ERRORS = (
    CryptoError, RecordNotFound, UnknownUser, DuplicateRecord, TransferFailure, OSError,
)

_installed_handlers: list[logging.Handler] = []


def setup_logging(home: Path, verbose: bool = False) -> None:
    """Send vaultx logs to ``<home>/logs/vaultx.log`` (and stderr if verbose).

    Safe to call repeatedly: handlers from an earlier call are replaced.
    """
    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    log_dir = home / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / LOG_FILE)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    _installed_handlers.append(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        _installed_handlers.append(stream_handler)

    for handler in _installed_handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def open_home(home: str) -> Path:
    """Resolve ``--home``, create it, and configure logging for the command."""
    home_path = Path(home).expanduser()
    home_path.mkdir(parents=True, exist_ok=True)
    root_ctx = click.get_current_context().find_root()
    setup_logging(home_path, verbose=bool(root_ctx.params.get("verbose")))
    return home_path


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[bold red]Error:[/] {escape(message)}")
    sys.exit(1)


home_option = click.option(
    "--home",
    default=VAULT_HOME,
    type=click.Path(),
    show_default=True,
    help="Vault home directory.",
)
