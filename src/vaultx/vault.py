"""
The Vault -- encrypted file lifecycle.

Adding a file encrypts both its name and its bytes, drops the envelope
into the vault directory as ``<name token>.enc``, and registers a
version-1 record. Every state change is audited.

Usage:
    vault = Vault(home)
    record = vault.add_file(Path("report.pdf"), owner_id="u1", password=pw)
    vault.extract_file(record.id, pw, Path("~/Downloads"))
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Optional

from . import envelope
from .audit import audit_event
from .config import VaultConfig, load_config
from .kdf import InvalidInput
from .models import FileRecord, Permission, PermissionGrant, Role, UserAccount
from .store import MetadataStore, RecordNotFound

logger = logging.getLogger("vaultx.vault")

BLOB_SUFFIX = ".enc"
# Per-component file name limit on common filesystems.
MAX_BLOB_NAME_BYTES = 255


def new_file_id() -> str:
    """Fresh opaque file identifier."""
    return f"file-{uuid.uuid4().hex[:12]}"


class Vault:
    """High-level operations over the store, the codec, and the audit log.

    Args:
        home: Vault home directory (~/.vaultx).
        store: Metadata store. Defaults to one rooted at ``home``.
        config: Configuration. Defaults to ``<home>/config.yaml``.
    """

    def __init__(
        self,
        home: Path,
        store: Optional[MetadataStore] = None,
        config: Optional[VaultConfig] = None,
    ):
        self.home = home.expanduser()
        self.config = config or load_config(self.home)
        self.store = store or MetadataStore(self.home)
        self.vault_dir = self.config.resolve_vault_dir(self.home)
        self.vault_dir.mkdir(parents=True, exist_ok=True)

    def blob_path(self, record: FileRecord) -> Path:
        """Local location of a record's ciphertext."""
        return self.vault_dir / record.encrypted_name

    def _require(self, file_id: str) -> FileRecord:
        record = self.store.get_file_record(file_id)
        if record is None:
            raise RecordNotFound(file_id)
        return record

    def add_file(self, path: Path, owner_id: str, password: str) -> FileRecord:
        """Encrypt a plaintext file into the vault and register it.

        Args:
            path: Plaintext file to add.
            owner_id: Owning principal.
            password: Encryption password.

        Returns:
            FileRecord: The new version-1 record.

        Raises:
            InvalidInput: If the encrypted blob name would exceed
                MAX_BLOB_NAME_BYTES (plaintext names over roughly 130 bytes).
        """
        path = path.expanduser()
        original_name = path.name
        token = envelope.encrypt_name(
            password, original_name, iterations=self.config.iterations
        )
        encrypted_name = f"{token}{BLOB_SUFFIX}"
        if len(encrypted_name.encode("ascii")) > MAX_BLOB_NAME_BYTES:
            raise InvalidInput(
                f"File name too long to encrypt: {original_name!r} becomes a "
                f"{len(encrypted_name)}-byte blob name (limit {MAX_BLOB_NAME_BYTES})"
            )
        blob = self.vault_dir / encrypted_name

        envelope.encrypt_file(password, path, blob, iterations=self.config.iterations)

        record = FileRecord(
            id=new_file_id(),
            original_name=original_name,
            encrypted_name=encrypted_name,
            owner_id=owner_id,
        )
        try:
            self.store.add_file_record(record)
        except Exception:
            blob.unlink(missing_ok=True)
            raise

        audit_event(self.home, owner_id, "UPLOAD", f"fileId={record.id}; name={original_name}")
        logger.info("Added %s as %s", original_name, record.id)
        return record

    def extract_file(self, file_id: str, password: str, dest: Path) -> Path:
        """Decrypt a vault file to ``dest``.

        A directory destination receives the file under its original name.

        Returns:
            Path: Where the plaintext was written.
        """
        record = self._require(file_id)
        dest = dest.expanduser()
        if dest.is_dir():
            dest = dest / record.original_name

        envelope.decrypt_file(password, self.blob_path(record), dest)
        audit_event(self.home, record.owner_id, "DOWNLOAD", f"fileId={record.id}")
        logger.info("Extracted %s to %s", record.id, dest)
        return dest

    def reveal_name(self, file_id: str, password: str) -> str:
        """Decrypt the name token embedded in a record's blob name."""
        record = self._require(file_id)
        token = record.encrypted_name
        if token.endswith(BLOB_SUFFIX):
            token = token[: -len(BLOB_SUFFIX)]
        return envelope.decrypt_name(password, token)

    def remove_file(self, file_id: str, user_id: str) -> FileRecord:
        """Hard-delete a record and its local blob.

        Returns:
            FileRecord: The record that was removed.
        """
        record = self._require(file_id)
        self.store.delete_file_record(file_id)
        self.blob_path(record).unlink(missing_ok=True)
        audit_event(self.home, user_id, "DELETE", f"fileId={file_id}")
        logger.info("Removed %s", file_id)
        return record

    def list_files(self, user_id: Optional[str] = None) -> list[FileRecord]:
        """All records, or only those a user owns or was granted."""
        if user_id is None:
            return self.store.get_file_records()
        return self.store.list_files_accessible_by(user_id)

    def grant(self, file_id: str, user_id: str, perm: Permission) -> bool:
        """Grant ``perm`` on a file. Returns False if already granted."""
        self._require(file_id)
        perm = Permission(perm)
        added = self.store.grant_permission(file_id, user_id, perm)
        audit_event(self.home, user_id, "GRANT", f"fileId={file_id}; perm={perm.value}")
        return added

    def revoke(self, file_id: str, user_id: str, perm: Permission) -> bool:
        """Revoke ``perm`` on a file. Returns False if it was not granted."""
        self._require(file_id)
        perm = Permission(perm)
        removed = self.store.revoke_permission(file_id, user_id, perm)
        audit_event(self.home, user_id, "REVOKE", f"fileId={file_id}; perm={perm.value}")
        return removed

    def permissions(self, file_id: str) -> list[PermissionGrant]:
        """Grants on one file."""
        self._require(file_id)
        return self.store.list_permissions(file_id)

    # --- Local accounts ---

    def add_user(self, username: str, password: str, role: Role = Role.USER) -> UserAccount:
        """Create a local account and audit it as USER_ADD."""
        role = Role(role)
        user = self.store.add_user(username, password, role)
        audit_event(self.home, user.id, "USER_ADD", f"username={username}; role={role.value}")
        return user

    def authenticate(self, username: str, password: str) -> Optional[UserAccount]:
        """Verify credentials.

        Returns:
            The account on success (audited as LOGIN), otherwise None.
        """
        if not self.store.verify_password(username, password):
            logger.info("Failed login for %s", username)
            return None
        user = self.store.get_user_by_username(username)
        audit_event(self.home, user.id, "LOGIN", "Successful login")
        return user

    def change_password(self, username: str, password: str) -> UserAccount:
        """Replace an account's password and audit it as PASSWD."""
        user = self.store.set_password(username, password)
        audit_event(self.home, user.id, "PASSWD", f"username={username}")
        return user

    def users(self) -> list[UserAccount]:
        """All local accounts, ordered by username."""
        return self.store.list_users()
