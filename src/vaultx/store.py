"""
Metadata store -- the local source of truth for file records.

Records, permission grants and local accounts live as JSON under ``<home>/metadata/``:

    files.json         list of FileRecord
    permissions.json   list of PermissionGrant
    users.json         list of UserAccount (bcrypt password hashes)

Every write goes to a temp file first and is then moved into place, so a
crash never leaves half a file. One re-entrant lock guards all access so
the reconciler and the mirror's watcher threads can share an instance.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import bcrypt
from pydantic import ValidationError

from .kdf import InvalidInput
from .models import FileRecord, Permission, PermissionGrant, Role, UserAccount

logger = logging.getLogger("vaultx.store")

METADATA_DIR = "metadata"
FILES_NAME = "files.json"
PERMISSIONS_NAME = "permissions.json"
USERS_NAME = "users.json"

BCRYPT_ROUNDS = 10
MAX_PASSWORD_BYTES = 72  # bcrypt ignores or rejects anything longer
DEFAULT_ADMIN_ID = "default-admin"
DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "password"


class RecordNotFound(LookupError):
    """Raised when a file id is not present in the store."""

    def __init__(self, file_id: str):
        super().__init__(f"File not found: {file_id}")
        self.file_id = file_id


class DuplicateRecord(ValueError):
    """Raised when adding a record whose id already exists."""


class UnknownUser(LookupError):
    """Raised when a username has no local account."""

    def __init__(self, username: str):
        super().__init__(f"User not found: {username}")
        self.username = username


def _write_json_atomic(path: Path, data: object) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _hash_password(password: str) -> str:
    """bcrypt-hash a password.

    Raises:
        InvalidInput: Empty, or longer than MAX_PASSWORD_BYTES as UTF-8.
    """
    if not isinstance(password, str) or not password:
        raise InvalidInput("Password must be a non-empty string")
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


class MetadataStore:
    """JSON-file backed store for file records and permission grants.

    Args:
        home: Vault home directory (~/.vaultx).
    """

    def __init__(self, home: Path) -> None:
        self.home = home.expanduser()
        self._dir = self.home / METADATA_DIR
        self._dir.mkdir(parents=True, exist_ok=True)
        self._files_path = self._dir / FILES_NAME
        self._perms_path = self._dir / PERMISSIONS_NAME
        self._users_path = self._dir / USERS_NAME
        self._lock = threading.RLock()

    # --- Loading / saving ---

    def _load_list(self, path: Path) -> list[dict]:
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Corrupt metadata file {path}: {exc}") from exc
        if not isinstance(data, list):
            raise RuntimeError(f"Corrupt metadata file {path}: expected a list")
        return data

    def _load_files(self) -> dict[str, FileRecord]:
        records: dict[str, FileRecord] = {}
        for raw in self._load_list(self._files_path):
            try:
                record = FileRecord.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping invalid file record: %s", exc)
                continue
            records[record.id] = record
        return records

    def _save_files(self, records: dict[str, FileRecord]) -> None:
        _write_json_atomic(
            self._files_path,
            [r.model_dump(mode="json") for r in records.values()],
        )

    def _load_grants(self) -> list[PermissionGrant]:
        grants = []
        for raw in self._load_list(self._perms_path):
            try:
                grants.append(PermissionGrant.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping invalid permission grant: %s", exc)
        return grants

    def _save_grants(self, grants: list[PermissionGrant]) -> None:
        _write_json_atomic(
            self._perms_path,
            [g.model_dump(mode="json") for g in grants],
        )

    # --- File records ---

    def get_file_records(self) -> list[FileRecord]:
        """All records, ordered by original name then id."""
        with self._lock:
            records = list(self._load_files().values())
        return sorted(records, key=lambda r: (r.original_name, r.id))

    def get_file_record(self, file_id: str) -> Optional[FileRecord]:
        """Fetch one record by id, or None."""
        with self._lock:
            return self._load_files().get(file_id)

    def get_file_record_by_encrypted_name(self, encrypted_name: str) -> Optional[FileRecord]:
        """Fetch the record whose blob is named ``encrypted_name``, or None."""
        with self._lock:
            for record in self._load_files().values():
                if record.encrypted_name == encrypted_name:
                    return record
        return None

    def add_file_record(self, record: FileRecord) -> FileRecord:
        """Insert a new record.

        Raises:
            DuplicateRecord: If the id or encrypted name is already used.
        """
        with self._lock:
            records = self._load_files()
            if record.id in records:
                raise DuplicateRecord(f"File id already exists: {record.id}")
            if any(r.encrypted_name == record.encrypted_name for r in records.values()):
                raise DuplicateRecord(
                    f"Encrypted name already registered: {record.encrypted_name}"
                )
            records[record.id] = record
            self._save_files(records)
        logger.debug("Added file record %s (%s)", record.id, record.original_name)
        return record

    def upsert_file_record(self, record: FileRecord) -> FileRecord:
        """Insert or fully replace the record with this id."""
        with self._lock:
            records = self._load_files()
            records[record.id] = record
            self._save_files(records)
        logger.debug("Upserted file record %s v%d", record.id, record.version)
        return record

    def delete_file_record(self, file_id: str) -> bool:
        """Hard-delete a record and its permission grants.

        Returns:
            True if a record was removed.
        """
        with self._lock:
            records = self._load_files()
            if records.pop(file_id, None) is None:
                return False
            self._save_files(records)
            grants = self._load_grants()
            remaining = [g for g in grants if g.file_id != file_id]
            if len(remaining) != len(grants):
                self._save_grants(remaining)
        logger.debug("Deleted file record %s", file_id)
        return True

    def bump_version_and_timestamp(
        self, file_id: str, now: Optional[datetime] = None
    ) -> FileRecord:
        """Increment a record's version by one and refresh its timestamp.

        Raises:
            RecordNotFound: If the id is unknown.
        """
        with self._lock:
            records = self._load_files()
            current = records.get(file_id)
            if current is None:
                raise RecordNotFound(file_id)
            updated = current.bumped(now)
            records[file_id] = updated
            self._save_files(records)
        logger.debug("Bumped %s to v%d", file_id, updated.version)
        return updated

    # --- Permissions ---

    def grant_permission(self, file_id: str, user_id: str, perm: Permission) -> bool:
        """Grant a permission. Duplicate grants are no-ops.

        Returns:
            True if a new grant was stored.
        """
        grant = PermissionGrant(file_id=file_id, user_id=user_id, perm=Permission(perm))
        with self._lock:
            grants = self._load_grants()
            if any(g.key == grant.key for g in grants):
                return False
            grants.append(grant)
            self._save_grants(grants)
        return True

    def revoke_permission(self, file_id: str, user_id: str, perm: Permission) -> bool:
        """Remove a grant.

        Returns:
            True if a grant was removed.
        """
        key = (file_id, user_id, Permission(perm).value)
        with self._lock:
            grants = self._load_grants()
            remaining = [g for g in grants if g.key != key]
            if len(remaining) == len(grants):
                return False
            self._save_grants(remaining)
        return True

    def list_permissions(self, file_id: str) -> list[PermissionGrant]:
        """Grants on one file, ordered by user id then permission."""
        with self._lock:
            grants = [g for g in self._load_grants() if g.file_id == file_id]
        return sorted(grants, key=lambda g: (g.user_id, g.perm.value))

    def list_files_accessible_by(self, user_id: str) -> list[FileRecord]:
        """Records the user owns or holds any grant on, ordered by name."""
        with self._lock:
            granted = {g.file_id for g in self._load_grants() if g.user_id == user_id}
            records = self.get_file_records()
        return [r for r in records if r.owner_id == user_id or r.id in granted]

    # --- Local accounts ---

    def _load_users(self) -> dict[str, UserAccount]:
        users: dict[str, UserAccount] = {}
        for raw in self._load_list(self._users_path):
            try:
                user = UserAccount.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping invalid user account: %s", exc)
                continue
            users[user.username] = user
        return users

    def _save_users(self, users: dict[str, UserAccount]) -> None:
        _write_json_atomic(
            self._users_path,
            [u.model_dump(mode="json") for u in users.values()],
        )

    def add_user(
        self,
        username: str,
        password: str,
        role: Role = Role.USER,
        user_id: Optional[str] = None,
    ) -> UserAccount:
        """Create a local account with a bcrypt-hashed password.

        Raises:
            InvalidInput: Empty username, or a password that is empty or
                longer than MAX_PASSWORD_BYTES once UTF-8 encoded.
            DuplicateRecord: If the username is taken.
        """
        if not username:
            raise InvalidInput("Username must not be empty")
        password_hash = _hash_password(password)
        user = UserAccount(
            id=user_id or f"user-{uuid.uuid4().hex[:12]}",
            username=username,
            password_hash=password_hash,
            role=Role(role),
        )
        with self._lock:
            users = self._load_users()
            if username in users:
                raise DuplicateRecord(f"Username already exists: {username}")
            if any(u.id == user.id for u in users.values()):
                raise DuplicateRecord(f"User id already exists: {user.id}")
            users[username] = user
            self._save_users(users)
        logger.info("Added %s account %s", user.role.value, username)
        return user

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        """Fetch one account by username, or None."""
        with self._lock:
            return self._load_users().get(username)

    def list_users(self) -> list[UserAccount]:
        """All accounts, ordered by username."""
        with self._lock:
            users = list(self._load_users().values())
        return sorted(users, key=lambda u: u.username)

    def verify_password(self, username: str, password: str) -> bool:
        """Check a password against the stored hash. Unknown users fail."""
        user = self.get_user_by_username(username)
        if user is None or not isinstance(password, str):
            return False
        encoded = password.encode("utf-8")
        if not encoded or len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, user.password_hash.encode("ascii"))
        except ValueError as exc:
            logger.warning("Unusable password hash for %s: %s", username, exc)
            return False

    def set_password(self, username: str, password: str) -> UserAccount:
        """Replace an account's password hash.

        Raises:
            InvalidInput: Empty or over-long password.
            UnknownUser: If the username is unknown.
        """
        password_hash = _hash_password(password)
        with self._lock:
            users = self._load_users()
            current = users.get(username)
            if current is None:
                raise UnknownUser(username)
            updated = current.model_copy(update={"password_hash": password_hash})
            users[username] = updated
            self._save_users(users)
        return updated

    def ensure_default_admin(self) -> bool:
        """Seed the ``admin`` account on first use.

        Returns:
            True if the account was created.
        """
        if self.get_user_by_username(DEFAULT_ADMIN_USERNAME) is not None:
            return False
        try:
            self.add_user(
                DEFAULT_ADMIN_USERNAME,
                DEFAULT_ADMIN_PASSWORD,
                Role.ADMIN,
                user_id=DEFAULT_ADMIN_ID,
            )
        except DuplicateRecord:
            return False
        logger.warning(
            "Created default admin account; run `vaultx user passwd admin` to change its password"
        )
        return True
