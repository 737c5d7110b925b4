"""
VaultX -- encrypted-file vault.

Files become self-contained AES-256-GCM envelopes, tracked as versioned
metadata records, and kept consistent across a remote object store or a
set of local replica directories. Last writer wins.
"""

import os

__version__ = "0.1.0"
__author__ = "VaultX contributors"

VAULT_HOME = os.environ.get("VAULTX_HOME", "~/.vaultx")
