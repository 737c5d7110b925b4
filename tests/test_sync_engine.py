"""
Tests for the last-writer-wins reconciler.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from vaultx.audit import read_audit_log
from vaultx.models import FileRecord, Session
from vaultx.store import MetadataStore
from vaultx.sync.engine import (
    SyncReconciler,
    files_to_download,
    files_to_upload,
    load_sync_state,
)
from vaultx.sync.models import DownloadLocator, UploadTarget
from vaultx.sync.transport import DirectoryTransport, TransferFailure, Transport

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)
SESSION = Session(user_id="u1", token="tok-123")


def _record(file_id: str, when: datetime, version: int = 1, **kw) -> FileRecord:
    return FileRecord(
        id=file_id,
        original_name=f"{file_id}.txt",
        encrypted_name=f"{file_id}.enc",
        owner_id="u1",
        version=version,
        last_modified_utc=when,
        **kw,
    )


class FakeTransport(Transport):
    """In-memory remote that records every call."""

    def __init__(self, records: Optional[list[FileRecord]] = None):
        self.records = {r.id: r for r in records or []}
        self.blobs: dict[str, bytes] = {}
        self.calls: list[tuple[str, ...]] = []
        self.list_gate: Optional[threading.Event] = None
        self.listing = threading.Event()

    @property
    def name(self) -> str:
        return "fake"

    def request_upload_target(self, blob_name, credential):
        self.calls.append(("upload-target", blob_name, credential))
        return UploadTarget(write_locator=f"put://{blob_name}", storage_path=f"u1/{blob_name}")

    def request_download_locator(self, storage_path, credential):
        self.calls.append(("download-locator", storage_path, credential))
        return DownloadLocator(read_locator=f"get://{storage_path}")

    def put_bytes(self, write_locator, data):
        self.calls.append(("put", write_locator))
        self.blobs["u1/" + write_locator[len("put://"):]] = data

    def get_bytes(self, read_locator):
        self.calls.append(("get", read_locator))
        path = read_locator[len("get://"):]
        if path not in self.blobs:
            raise TransferFailure(f"404 {path}")
        return self.blobs[path]

    def list_remote_records(self, credential):
        self.calls.append(("list", credential))
        self.listing.set()
        if self.list_gate is not None:
            self.list_gate.wait(timeout=5)
        return list(self.records.values())

    def persist_remote_metadata(self, record, credential):
        self.calls.append(("persist", record.id, credential))
        self.records[record.id] = record


@pytest.fixture
def vault_dir(tmp_vault_home: Path) -> Path:
    d = tmp_vault_home / "vault"
    d.mkdir()
    return d


class TestDiff:
    """Tests for the pure diff helpers."""

    def test_download_missing_and_newer(self):
        remote = [_record("a", T1), _record("b", T0), _record("c", T0)]
        local = {"a": _record("a", T0), "b": _record("b", T0)}
        assert [r.id for r in files_to_download(remote, local)] == ["a", "c"]

    def test_upload_missing_and_newer(self):
        local = [_record("a", T1), _record("b", T0), _record("c", T0)]
        remote = {"a": _record("a", T0), "b": _record("b", T1)}
        assert [r.id for r in files_to_upload(local, remote)] == ["a", "c"]

    def test_equal_timestamps_do_nothing(self):
        """Ties are not conflicts -- no transfer either way."""
        remote = [_record("a", T0, version=3)]
        local = {"a": _record("a", T0, version=1)}
        assert files_to_download(remote, local) == []
        assert files_to_upload(list(local.values()), {r.id: r for r in remote}) == []


class TestRunSync:
    """Tests for SyncReconciler.run_sync()."""

    def test_downloads_newer_remote(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T0, version=1))
        remote = _record("f1", T1, version=4, storage_path="u1/f1.enc")
        transport = FakeTransport([remote])
        transport.blobs["u1/f1.enc"] = b"remote ciphertext"

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.downloaded == ["f1"]
        assert report.uploaded == []
        local = store.get_file_record("f1")
        assert local.version == 4
        assert local.storage_path == "u1/f1.enc"
        assert local.last_modified_utc == T1
        assert (vault_dir / "f1.enc").read_bytes() == b"remote ciphertext"

    def test_downloads_missing_locally(self, store: MetadataStore, vault_dir: Path):
        transport = FakeTransport([_record("f2", T0, storage_path="u1/f2.enc")])
        transport.blobs["u1/f2.enc"] = b"x"

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.downloaded == ["f2"]
        assert store.get_file_record("f2") is not None

    def test_uploads_newer_local(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T1, version=3))
        (vault_dir / "f1.enc").write_bytes(b"local ciphertext")
        transport = FakeTransport([_record("f1", T0, version=3, storage_path="old")])

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.uploaded == ["f1"]
        local = store.get_file_record("f1")
        remote = transport.records["f1"]
        assert local.version == remote.version == 4
        assert local.storage_path == remote.storage_path == "u1/f1.enc"
        assert local.last_modified_utc == remote.last_modified_utc
        assert local.last_modified_utc >= T1
        assert transport.blobs["u1/f1.enc"] == b"local ciphertext"

    def test_uploads_missing_remotely(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T0))
        (vault_dir / "f1.enc").write_bytes(b"abc")
        transport = FakeTransport()

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.uploaded == ["f1"]
        assert transport.records["f1"].version == 2

    def test_credential_forwarded(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T0))
        (vault_dir / "f1.enc").write_bytes(b"abc")
        transport = FakeTransport()

        SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        credentials = {c[-1] for c in transport.calls if c[0] in ("list", "persist", "upload-target")}
        assert credentials == {"tok-123"}

    def test_in_sync_is_quiet(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T0))
        transport = FakeTransport([_record("f1", T0)])

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.ok
        assert report.downloaded == report.uploaded == []
        assert transport.calls == [("list", "tok-123")]

    def test_no_session_is_noop(self, store: MetadataStore, vault_dir: Path):
        transport = FakeTransport()
        assert SyncReconciler(store, transport, vault_dir).run_sync(None) is None
        assert transport.calls == []

    def test_busy_is_noop(self, store: MetadataStore, vault_dir: Path):
        """A pass requested while another runs touches nothing."""
        transport = FakeTransport([_record("f1", T1, storage_path="u1/f1.enc")])
        reconciler = SyncReconciler(store, transport, vault_dir)

        reconciler._lock.acquire()
        try:
            assert reconciler.syncing
            assert reconciler.run_sync(SESSION) is None
        finally:
            reconciler._lock.release()

        assert transport.calls == []
        assert store.get_file_records() == []

    def test_concurrent_caller_gets_noop(self, store: MetadataStore, vault_dir: Path):
        transport = FakeTransport()
        transport.list_gate = threading.Event()
        reconciler = SyncReconciler(store, transport, vault_dir)
        results = []

        worker = threading.Thread(target=lambda: results.append(reconciler.run_sync(SESSION)))
        worker.start()
        assert transport.listing.wait(timeout=5)

        assert reconciler.run_sync(SESSION) is None
        transport.list_gate.set()
        worker.join(timeout=5)

        assert len(results) == 1 and results[0] is not None
        assert [c for c in transport.calls if c[0] == "list"] == [("list", "tok-123")]
        assert not reconciler.syncing

    def test_partial_failure_is_isolated(self, store: MetadataStore, vault_dir: Path):
        good = _record("good", T0, storage_path="u1/good.enc")
        missing = _record("bad", T0, storage_path="u1/bad.enc")
        transport = FakeTransport([missing, good])
        transport.blobs["u1/good.enc"] = b"ok"
        store.add_file_record(_record("up", T0))
        (vault_dir / "up.enc").write_bytes(b"upload me")

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert report.downloaded == ["good"]
        assert report.uploaded == ["up"]
        assert list(report.failed) == ["bad"]
        assert "404" in report.failed["bad"]
        assert not report.ok
        assert store.get_file_record("bad") is None

    def test_remote_record_without_storage_path(self, store: MetadataStore, vault_dir: Path):
        transport = FakeTransport([_record("f1", T0)])
        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)
        assert "no storage path" in report.failed["f1"]

    def test_missing_local_blob_fails_item(self, store: MetadataStore, vault_dir: Path):
        store.add_file_record(_record("f1", T0))
        transport = FakeTransport()

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert "f1" in report.failed
        assert store.get_file_record("f1").version == 1
        assert transport.records == {}

    def test_escaping_blob_name_fails_item(self, store: MetadataStore, vault_dir: Path):
        evil = FileRecord(
            id="evil",
            original_name="x",
            encrypted_name="../../outside.enc",
            owner_id="u1",
            last_modified_utc=T0,
            storage_path="u1/evil",
        )
        transport = FakeTransport([evil])
        transport.blobs["u1/evil"] = b"payload"

        report = SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        assert "evil" in report.failed
        assert not (vault_dir.parent.parent / "outside.enc").exists()

    def test_listing_failure_propagates(self, store: MetadataStore, vault_dir: Path):
        class Broken(FakeTransport):
            def list_remote_records(self, credential):
                raise TransferFailure("network down")

        reconciler = SyncReconciler(store, Broken(), vault_dir)
        with pytest.raises(TransferFailure):
            reconciler.run_sync(SESSION)

        assert not reconciler.syncing
        assert reconciler.state.last_error == "network down"

    def test_state_is_persisted(self, store: MetadataStore, vault_dir: Path, tmp_vault_home: Path):
        store.add_file_record(_record("f1", T0))
        (vault_dir / "f1.enc").write_bytes(b"abc")

        SyncReconciler(store, FakeTransport(), vault_dir).run_sync(SESSION)

        state = load_sync_state(tmp_vault_home)
        assert state.runs == 1
        assert state.uploads == 1
        assert state.last_sync is not None
        assert state.last_error is None

    def test_audits_transfers(self, store: MetadataStore, vault_dir: Path, tmp_vault_home: Path):
        store.add_file_record(_record("up", T0))
        (vault_dir / "up.enc").write_bytes(b"abc")
        transport = FakeTransport([_record("down", T0, storage_path="u1/down.enc")])
        transport.blobs["u1/down.enc"] = b"x"

        SyncReconciler(store, transport, vault_dir).run_sync(SESSION)

        actions = {e.action for e in read_audit_log(tmp_vault_home)}
        assert actions == {"SYNC_DOWNLOAD", "SYNC_UPLOAD"}

    def test_status(self, store: MetadataStore, vault_dir: Path):
        status = SyncReconciler(store, FakeTransport(), vault_dir).status()
        assert status["transport"] == "fake"
        assert status["syncing"] is False
        assert status["state"]["runs"] == 0


class TestDirectoryRemote:
    """Two vault homes converging through a DirectoryTransport."""

    def test_two_homes_converge(self, tmp_path: Path):
        remote = DirectoryTransport(tmp_path / "remote")
        home_a, home_b = tmp_path / "a", tmp_path / "b"
        store_a, store_b = MetadataStore(home_a), MetadataStore(home_b)
        vault_a, vault_b = home_a / "vault", home_b / "vault"
        vault_a.mkdir()
        vault_b.mkdir()

        store_a.add_file_record(_record("f1", T0))
        (vault_a / "f1.enc").write_bytes(b"from a")

        first = SyncReconciler(store_a, remote, vault_a).run_sync(SESSION)
        second = SyncReconciler(store_b, remote, vault_b).run_sync(SESSION)

        assert first.uploaded == ["f1"]
        assert second.downloaded == ["f1"]
        assert (vault_b / "f1.enc").read_bytes() == b"from a"
        assert store_b.get_file_record("f1").version == 2

        again = SyncReconciler(store_a, remote, vault_a).run_sync(SESSION)
        assert again.downloaded == again.uploaded == []
