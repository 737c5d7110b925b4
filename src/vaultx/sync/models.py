"""
Sync data models -- transport results, pass reports, persisted state.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UploadTarget(BaseModel):
    """Where to PUT a blob, and where it will live afterwards."""

    write_locator: str
    storage_path: str


class DownloadLocator(BaseModel):
    """Where to GET a blob."""

    read_locator: str


class SyncReport(BaseModel):
    """Outcome of one reconciliation pass."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    downloaded: list[str] = Field(default_factory=list)
    uploaded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when no item failed."""
        return not self.failed


class SyncState(BaseModel):
    """Cumulative reconciler state persisted to disk."""

    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    downloads: int = 0
    uploads: int = 0
    failures: int = 0


class MirrorEventKind(str, Enum):
    """What happened to a watched file."""

    SYNCED = "synced"
    ERROR = "error"


class MirrorEvent(BaseModel):
    """One watch-mode notification for a replica file."""

    kind: MirrorEventKind
    encrypted_name: str
    updated: int = 0
    error: Optional[str] = None
