"""
Sync Engine -- last-writer-wins reconciliation against a remote store.

One pass:

    list remote + list local  ->  diff by id and lastModifiedUTC
    download newer remote copies  ->  upload newer local copies

Only one pass runs per reconciler at a time; a second caller gets an
immediate no-op. A failed item is logged and skipped, never fatal to
the pass.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..audit import audit_event
from ..models import FileRecord, Session, utcnow
from ..store import MetadataStore
from .models import SyncReport, SyncState
from .transport import TransferFailure, Transport

logger = logging.getLogger("vaultx.sync.engine")

SYNC_DIR = "sync"
STATE_FILE = "state.json"


def load_sync_state(home: Path) -> SyncState:
    """Load persisted reconciler state, or a fresh one."""
    state_file = home.expanduser() / SYNC_DIR / STATE_FILE
    if state_file.exists():
        try:
            return SyncState(**json.loads(state_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load sync state: %s", exc)
    return SyncState()


def files_to_download(
    remote: list[FileRecord], local_by_id: dict[str, FileRecord]
) -> list[FileRecord]:
    """Remote records that are missing locally or strictly newer."""
    result = []
    for record in remote:
        local = local_by_id.get(record.id)
        if local is None or record.last_modified_utc > local.last_modified_utc:
            result.append(record)
    return result


def files_to_upload(
    local: list[FileRecord], remote_by_id: dict[str, FileRecord]
) -> list[FileRecord]:
    """Local records that are missing remotely or strictly newer."""
    result = []
    for record in local:
        remote = remote_by_id.get(record.id)
        if remote is None or record.last_modified_utc > remote.last_modified_utc:
            result.append(record)
    return result


class SyncReconciler:
    """Reconciles the local metadata store with a remote Transport.

    Args:
        store: Local metadata store.
        transport: Remote store client.
        vault_dir: Directory holding local ciphertext blobs.
    """

    def __init__(
        self,
        store: MetadataStore,
        transport: Transport,
        vault_dir: Path,
    ):
        self.store = store
        self.transport = transport
        self.vault_dir = vault_dir.expanduser()
        self.home = store.home
        self.sync_dir = self.home / SYNC_DIR
        self._lock = threading.Lock()
        self.state = self._load_state()

    @property
    def syncing(self) -> bool:
        """True while a pass holds the sync lock."""
        return self._lock.locked()

    def _load_state(self) -> SyncState:
        return load_sync_state(self.home)

    def _save_state(self) -> None:
        """Persist sync state to disk."""
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        (self.sync_dir / STATE_FILE).write_text(
            self.state.model_dump_json(indent=2), encoding="utf-8"
        )

    def run_sync(self, session: Optional[Session]) -> Optional[SyncReport]:
        """Run one reconciliation pass.

        Returns immediately with None, touching nothing, when another
        pass is in progress or no session is given.

        Args:
            session: Authenticated principal; its token goes to the transport.

        Returns:
            SyncReport for the pass, or None for a no-op.

        Raises:
            TransferFailure: If the remote listing itself cannot be fetched.
        """
        if session is None:
            logger.info("Sync skipped (no session)")
            return None
        if not self._lock.acquire(blocking=False):
            logger.info("Sync skipped (already in progress)")
            return None

        report = SyncReport(started_at=utcnow())
        try:
            logger.info("Starting sync via %s", self.transport.name)
            remote_records = self.transport.list_remote_records(session.token)
            local_records = self.store.get_file_records()

            remote_by_id = {r.id: r for r in remote_records}
            local_by_id = {r.id: r for r in local_records}

            downloads = files_to_download(remote_records, local_by_id)
            uploads = files_to_upload(local_records, remote_by_id)
            logger.info(
                "Sync tasks: %d to download, %d to upload",
                len(downloads),
                len(uploads),
            )

            for record in downloads:
                self._run_item(self._download, record, session, report, report.downloaded)
            for record in uploads:
                self._run_item(self._upload, record, session, report, report.uploaded)

            self.state.last_error = (
                f"{len(report.failed)} item(s) failed" if report.failed else None
            )
            return report
        except Exception as exc:
            self.state.last_error = str(exc)
            raise
        finally:
            report.finished_at = utcnow()
            self._record(report)
            self._lock.release()
            logger.info(
                "Sync finished: %d downloaded, %d uploaded, %d failed",
                len(report.downloaded),
                len(report.uploaded),
                len(report.failed),
            )

    def _run_item(self, action, record, session, report, done) -> None:
        """Run one transfer, isolating its failure from the rest of the pass."""
        try:
            action(record, session)
        except Exception as exc:
            logger.error(
                "Failed to sync %s (%s): %s", record.original_name, record.id, exc
            )
            report.failed[record.id] = str(exc)
            return
        done.append(record.id)

    def _blob_path(self, record: FileRecord) -> Path:
        target = (self.vault_dir / record.encrypted_name).resolve()
        if not target.is_relative_to(self.vault_dir.resolve()):
            raise TransferFailure(f"Blob name escapes the vault: {record.encrypted_name}")
        return target

    def _download(self, remote: FileRecord, session: Session) -> None:
        """Fetch a remote blob and replace the local record with the remote one."""
        logger.info("Downloading: %s", remote.original_name)
        if not remote.storage_path:
            raise TransferFailure(f"Remote record {remote.id} has no storage path")

        locator = self.transport.request_download_locator(remote.storage_path, session.token)
        data = self.transport.get_bytes(locator.read_locator)

        target = self._blob_path(remote)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

        self.store.upsert_file_record(remote)
        audit_event(
            self.home,
            session.user_id,
            "SYNC_DOWNLOAD",
            f"fileId={remote.id}; version={remote.version}",
        )

    def _upload(self, local: FileRecord, session: Session) -> None:
        """Push a local blob, bump its version, and record it on both sides."""
        logger.info("Uploading: %s", local.original_name)
        data = self._blob_path(local).read_bytes()

        target = self.transport.request_upload_target(local.encrypted_name, session.token)
        self.transport.put_bytes(target.write_locator, data)

        updated = local.bumped(storage_path=target.storage_path)
        self.transport.persist_remote_metadata(updated, session.token)
        self.store.upsert_file_record(updated)
        audit_event(
            self.home,
            session.user_id,
            "SYNC_UPLOAD",
            f"fileId={local.id}; version={updated.version}",
        )

    def _record(self, report: SyncReport) -> None:
        self.state.last_sync = report.finished_at or datetime.now(timezone.utc)
        self.state.runs += 1
        self.state.downloads += len(report.downloaded)
        self.state.uploads += len(report.uploaded)
        self.state.failures += len(report.failed)
        try:
            self._save_state()
        except OSError as exc:
            logger.warning("Failed to save sync state: %s", exc)

    def status(self) -> dict:
        """Current reconciler status.

        Returns:
            Dict with state, transport name, and lock status.
        """
        return {
            "state": self.state.model_dump(mode="json"),
            "transport": self.transport.name,
            "syncing": self.syncing,
            "vault_dir": str(self.vault_dir),
        }
