"""
Audit trail -- every state change leaves a line.

The log is JSONL (one JSON object per line) at ``<home>/audit.log``:
append-only, machine-parseable, never rewritten. The sync engine only
emits entries; nothing in the vault reads them back to make decisions.
"""

from __future__ import annotations

import json
import socket
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

AUDIT_LOG_NAME = "audit.log"
DEFAULT_LIMIT = 100

_write_lock = threading.Lock()


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    user_id: str
    action: str
    details: str = ""
    host: str = Field(default_factory=socket.gethostname)


def audit_event(
    home: Path,
    user_id: str,
    action: str,
    details: str = "",
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: Vault home directory.
        user_id: Principal responsible for the change.
        action: Event category (UPLOAD, DOWNLOAD, DELETE, GRANT, REVOKE,
            SYNC, SYNC_DOWNLOAD, SYNC_UPLOAD, USER_ADD, LOGIN, PASSWD).
        details: Human-readable description, e.g. ``fileId=...; copies=2``.

    Returns:
        AuditEntry: The entry that was written.
    """
    home = home.expanduser()
    home.mkdir(parents=True, exist_ok=True)
    entry = AuditEntry(user_id=user_id, action=action, details=details)

    with _write_lock, (home / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")

    return entry


def read_audit_log(home: Path, limit: int = DEFAULT_LIMIT) -> list[AuditEntry]:
    """Read the audit log, newest first.

    Lines that are not valid entries come back with action ``LEGACY``
    rather than aborting the read.

    Args:
        home: Vault home directory.
        limit: Maximum entries to return (0 = all).

    Returns:
        list[AuditEntry]: Entries ordered by timestamp, descending.
    """
    audit_log = home.expanduser() / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            entries.append(
                AuditEntry(timestamp="", user_id="unknown", action="LEGACY", details=line)
            )

    # Stable sort keeps write order for equal timestamps.
    entries.reverse()
    entries.sort(key=lambda e: e.timestamp, reverse=True)
    if limit > 0:
        entries = entries[:limit]
    return entries
