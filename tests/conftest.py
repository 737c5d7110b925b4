"""Shared test fixtures for vaultx."""

from __future__ import annotations

from pathlib import Path

import pytest

FAST_ITERATIONS = 1000


@pytest.fixture
def tmp_vault_home(tmp_path: Path) -> Path:
    """Provide a temporary vault home directory for testing."""
    home = tmp_path / ".vaultx"
    home.mkdir()
    return home


@pytest.fixture
def fast_config_home(tmp_vault_home: Path) -> Path:
    """Vault home whose config uses a low PBKDF2 iteration count."""
    import yaml

    (tmp_vault_home / "config.yaml").write_text(
        yaml.dump({"iterations": FAST_ITERATIONS}, default_flow_style=False)
    )
    return tmp_vault_home


@pytest.fixture
def store(tmp_vault_home: Path):
    """A fresh MetadataStore rooted at the temporary home."""
    from vaultx.store import MetadataStore

    return MetadataStore(tmp_vault_home)
