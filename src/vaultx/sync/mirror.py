"""
Directory Mirror -- keep every replica directory holding the newest copy.

No network involved: each replica is just a directory. For a given
blob, the copy with the greatest modification time is the source of
truth; every missing or strictly older copy gets overwritten from it.

Watch mode uses watchdog to observe every replica and re-runs the same
reconciliation per file, debounced so a burst of writes to one blob
triggers a single pass.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..audit import audit_event
from ..store import MetadataStore, RecordNotFound
from .models import MirrorEvent, MirrorEventKind

logger = logging.getLogger("vaultx.sync.mirror")

DEFAULT_DEBOUNCE_MS = 300
STOP_TIMEOUT = 30.0

MirrorListener = Callable[[MirrorEvent], None]


class ReplicaCopyFailure(OSError):
    """Raised when one or more replicas could not be brought up to date.

    Copies to the other replicas were still made; ``updated`` counts them.
    """

    def __init__(self, encrypted_name: str, updated: int, failures: dict[Path, OSError]):
        details = "; ".join(f"{d}: {exc}" for d, exc in failures.items())
        super().__init__(f"Failed to mirror {encrypted_name} to {len(failures)} replica(s): {details}")
        self.encrypted_name = encrypted_name
        self.updated = updated
        self.failures = failures


def _copy_atomic(source: Path, target: Path) -> None:
    """Copy bytes and mtime into a hidden sibling, then move it over ``target``.

    A failed copy never leaves a partial ``target`` behind.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    os.close(fd)
    try:
        shutil.copyfile(source, tmp_name)
        shutil.copystat(source, tmp_name)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class _ReplicaEventHandler(FileSystemEventHandler):
    """Forwards file events under one replica root as blob names."""

    def __init__(self, mirror: "DirectoryMirror", root: Path):
        self.mirror = mirror
        self.root = root

    def _name_for(self, path: str) -> Optional[str]:
        try:
            rel = Path(path).resolve().relative_to(self.root)
        except (OSError, ValueError):
            return None
        if rel.name.startswith(".") or not rel.parts:
            return None
        return rel.as_posix()

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        for path in paths:
            name = self._name_for(path)
            if name:
                self.mirror.schedule(name)


class DirectoryMirror:
    """Mirrors encrypted blobs across a set of local replica directories.

    Args:
        store: Metadata store holding the file records.
        directories: Replica roots. Duplicates are dropped.
        debounce_ms: Quiet period per blob before watch mode syncs it.
    """

    def __init__(
        self,
        store: MetadataStore,
        directories: Iterable[Path],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.store = store
        self.directories: list[Path] = []
        self.set_directories(directories)
        self.debounce_ms = debounce_ms
        self._listeners: list[MirrorListener] = []
        self._pending: dict[str, threading.Timer] = {}
        self._pending_lock = threading.Lock()
        self._inflight: set[threading.Thread] = set()
        self._observer: Optional[Observer] = None

    def set_directories(self, directories: Iterable[Path]) -> None:
        """Replace the replica set, keeping first-seen order."""
        unique: list[Path] = []
        for d in directories:
            path = Path(d).expanduser()
            if path not in unique:
                unique.append(path)
        self.directories = unique

    # --- Reconciliation ---

    def find_latest_copy(self, encrypted_name: str) -> Optional[tuple[Path, float]]:
        """Locate the newest existing copy of a blob.

        Returns:
            (path, mtime) of the newest copy, or None if no replica has it.
        """
        latest: Optional[tuple[Path, float]] = None
        for directory in self.directories:
            candidate = directory / encrypted_name
            if not candidate.is_file():
                continue
            mtime = candidate.stat().st_mtime
            if latest is None or mtime > latest[1]:
                latest = (candidate, mtime)
        return latest

    def sync_file_by_id(self, file_id: str) -> int:
        """Bring every replica of one file up to the newest copy.

        Args:
            file_id: Record id.

        Returns:
            Number of copies written; 0 when the file exists nowhere or
            every replica is already current.

        Raises:
            RecordNotFound: If the id is not in the store.
            ReplicaCopyFailure: If any replica could not be written. The
                other replicas are still updated and the record bumped.
        """
        record = self.store.get_file_record(file_id)
        if record is None:
            raise RecordNotFound(file_id)

        latest = self.find_latest_copy(record.encrypted_name)
        if latest is None:
            logger.debug("No copy of %s in any replica", record.encrypted_name)
            return 0
        source, source_mtime = latest

        updated = 0
        failures: dict[Path, OSError] = {}
        for directory in self.directories:
            target = directory / record.encrypted_name
            if target == source:
                continue
            try:
                if target.is_file() and target.stat().st_mtime >= source_mtime:
                    continue
                _copy_atomic(source, target)
            except OSError as exc:
                logger.error("Failed to copy %s to %s: %s", record.encrypted_name, directory, exc)
                failures[directory] = exc
                continue
            updated += 1

        if updated:
            self.store.bump_version_and_timestamp(file_id)
            audit_event(
                self.store.home,
                record.owner_id,
                "SYNC",
                f"fileId={file_id}; copies={updated}",
            )
            logger.info("Mirrored %s to %d replica(s)", record.encrypted_name, updated)
        if failures:
            raise ReplicaCopyFailure(record.encrypted_name, updated, failures)
        return updated

    def sync_by_encrypted_name(self, encrypted_name: str) -> int:
        """Sync the record owning ``encrypted_name``; 0 for untracked names."""
        record = self.store.get_file_record_by_encrypted_name(encrypted_name)
        if record is None:
            return 0
        return self.sync_file_by_id(record.id)

    def sync_all(self) -> dict[str, int]:
        """Sync every tracked file. Failures are logged and skipped.

        Returns:
            Map of file id to copies written. Files whose replicas partly
            failed report the copies that did land; files that failed
            outright are left out.
        """
        results: dict[str, int] = {}
        for record in self.store.get_file_records():
            try:
                results[record.id] = self.sync_file_by_id(record.id)
            except ReplicaCopyFailure as exc:
                logger.error("Failed to mirror %s: %s", record.id, exc)
                results[record.id] = exc.updated
            except (OSError, RecordNotFound) as exc:
                logger.error("Failed to mirror %s: %s", record.id, exc)
        return results

    # --- Watch mode ---

    def add_listener(self, listener: MirrorListener) -> None:
        """Register a callback for watch-mode events."""
        self._listeners.append(listener)

    def _emit(self, event: MirrorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Mirror listener failed: %s", exc)

    def schedule(self, encrypted_name: str) -> None:
        """Debounce a change to one blob, then sync it.

        Repeated calls for the same name within the debounce window
        collapse into one sync; different names never delay each other.
        """
        with self._pending_lock:
            existing = self._pending.get(encrypted_name)
            if existing is not None:
                existing.cancel()
            timer = threading.Timer(
                self.debounce_ms / 1000.0, self._fire, args=(encrypted_name,)
            )
            timer.daemon = True
            self._pending[encrypted_name] = timer
            timer.start()

    def _fire(self, encrypted_name: str) -> None:
        current = threading.current_thread()
        with self._pending_lock:
            if self._pending.get(encrypted_name) is current:
                del self._pending[encrypted_name]
            self._inflight.add(current)
        try:
            self._sync_and_emit(encrypted_name)
        finally:
            with self._pending_lock:
                self._inflight.discard(current)

    def _sync_and_emit(self, encrypted_name: str) -> None:
        try:
            updated = self.sync_by_encrypted_name(encrypted_name)
        except Exception as exc:
            logger.error("Watch sync failed for %s: %s", encrypted_name, exc)
            self._emit(MirrorEvent(
                kind=MirrorEventKind.ERROR,
                encrypted_name=encrypted_name,
                error=str(exc),
            ))
            return
        self._emit(MirrorEvent(
            kind=MirrorEventKind.SYNCED,
            encrypted_name=encrypted_name,
            updated=updated,
        ))

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def start_watching(self) -> None:
        """Observe every replica directory, creating missing ones."""
        self.stop_watching()
        observer = Observer()
        for directory in self.directories:
            directory.mkdir(parents=True, exist_ok=True)
            root = directory.resolve()
            observer.schedule(_ReplicaEventHandler(self, root), str(root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %d replica directories", len(self.directories))

    def stop_watching(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop observers, drop pending syncs, and wait for running ones.

        A sync that already started is allowed to finish its copies.
        """
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=10)
            self._observer = None
        with self._pending_lock:
            for timer in self._pending.values():
                timer.cancel()
            # A fired timer stays in _pending until _fire moves it to _inflight.
            waiting = set(self._pending.values()) | self._inflight
            self._pending.clear()
        current = threading.current_thread()
        for thread in waiting:
            if thread is not current:
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning("Mirror sync still running after %.0fs", timeout)
