"""
Vault configuration -- where things live and how sync behaves.

Persisted as YAML at ``<home>/config.yaml``. A missing or broken file
falls back to defaults so the CLI always starts.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from .kdf import DEFAULT_ITERATIONS

logger = logging.getLogger("vaultx.config")

CONFIG_FILE = "config.yaml"
DEFAULT_API_BASE = "http://localhost:3001"


class VaultConfig(BaseModel):
    """Complete configuration for one vault home."""

    api_base: str = Field(
        default_factory=lambda: os.environ.get("VAULTX_API_BASE", DEFAULT_API_BASE)
    )
    request_timeout: float = 30.0
    vault_dir: Path = Path("vault")
    replica_dirs: list[Path] = Field(default_factory=list)
    debounce_ms: int = Field(default=300, ge=0)
    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=1, le=0xFFFFFFFF)

    def resolve_vault_dir(self, home: Path) -> Path:
        """Absolute location of local ciphertext blobs."""
        vault_dir = self.vault_dir.expanduser()
        if vault_dir.is_absolute():
            return vault_dir
        return home.expanduser() / vault_dir

    def resolve_replica_dirs(self) -> list[Path]:
        """Replica directories, expanded and de-duplicated in order."""
        seen: list[Path] = []
        for d in self.replica_dirs:
            path = d.expanduser()
            if path not in seen:
                seen.append(path)
        return seen


def load_config(home: Path) -> VaultConfig:
    """Load configuration from ``<home>/config.yaml``.

    Args:
        home: Vault home directory.

    Returns:
        VaultConfig: Parsed config, or defaults if absent or unreadable.
    """
    config_file = home.expanduser() / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return VaultConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)
    return VaultConfig()


def save_config(home: Path, config: VaultConfig) -> Path:
    """Persist configuration to ``<home>/config.yaml``.

    Returns:
        Path: The written file.
    """
    home = home.expanduser()
    home.mkdir(parents=True, exist_ok=True)
    config_file = home / CONFIG_FILE
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    logger.info("Saved config to %s", config_file)
    return config_file
