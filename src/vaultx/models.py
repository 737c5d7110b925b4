"""
Pydantic models for vault metadata.

Records travel between the local store and the remote API, so every
model accepts both snake_case and the camelCase names used on the wire.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models serialized as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Serialize with camelCase keys and JSON-safe values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FileRecord(WireModel):
    """Metadata for one encrypted file.

    ``last_modified_utc`` is the only input to conflict resolution;
    ``version`` is informational and only ever grows by one per
    propagated change.
    """

    id: str
    original_name: str
    encrypted_name: str
    owner_id: str
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    last_modified_utc: datetime = Field(
        default_factory=utcnow, alias="lastModifiedUTC"
    )
    storage_path: Optional[str] = None

    @field_validator("created_at", "last_modified_utc")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def bumped(self, now: Optional[datetime] = None, **changes) -> "FileRecord":
        """Return a copy with version + 1 and a fresh modification time.

        The timestamp never moves backwards, even if the local clock does.

        Args:
            now: Timestamp to apply. Defaults to the current UTC time.
            **changes: Extra fields to set on the copy (e.g. storage_path).

        Returns:
            FileRecord: The updated copy; this record is left unchanged.
        """
        stamp = now or utcnow()
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        update = dict(changes)
        update["version"] = self.version + 1
        update["last_modified_utc"] = max(stamp, self.last_modified_utc)
        return self.model_copy(update=update)


class Permission(str, Enum):
    """Access level a user can be granted on a file."""

    READ = "read"
    WRITE = "write"


class PermissionGrant(WireModel):
    """One (file, user, permission) triple."""

    file_id: str
    user_id: str
    perm: Permission

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.file_id, self.user_id, self.perm.value)


class Role(str, Enum):
    """Local account role."""

    ADMIN = "admin"
    USER = "user"


class UserAccount(WireModel):
    """A local vault account. Only the bcrypt hash of the password is kept."""

    id: str
    username: str
    password_hash: str
    role: Role = Role.USER
    created_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """An authenticated principal.

    Passed explicitly to every sync call. The token is forwarded to the
    transport unchanged and never inspected.
    """

    user_id: str
    token: str
    username: Optional[str] = None
