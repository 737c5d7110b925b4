"""
Sync transports -- how ciphertext and metadata reach the remote store.

The remote is an opaque blob store behind pre-signed URLs plus a small
metadata API. The reconciler only sees the Transport interface; every
failure surfaces as TransferFailure so one bad item can be skipped
without aborting the pass.

HttpTransport: the vault API over HTTPS (requests).
DirectoryTransport: the same contract emulated in a directory. For NAS
mounts, USB drives, and tests.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import ValidationError

from ..models import FileRecord, Session
from .models import DownloadLocator, UploadTarget

logger = logging.getLogger("vaultx.sync.transport")


class TransferFailure(Exception):
    """Raised for any network, HTTP, or remote-store error."""


class Transport(ABC):
    """Abstract remote store.

    ``credential`` is the opaque token from the authentication layer;
    transports forward it and never interpret it.
    """

    @abstractmethod
    def request_upload_target(self, blob_name: str, credential: str) -> UploadTarget:
        """Ask the remote for a write location for ``blob_name``."""

    @abstractmethod
    def request_download_locator(self, storage_path: str, credential: str) -> DownloadLocator:
        """Ask the remote for a read location for ``storage_path``."""

    @abstractmethod
    def put_bytes(self, write_locator: str, data: bytes) -> None:
        """Store ``data`` at a write locator."""

    @abstractmethod
    def get_bytes(self, read_locator: str) -> bytes:
        """Fetch the bytes behind a read locator."""

    @abstractmethod
    def list_remote_records(self, credential: str) -> list[FileRecord]:
        """Authoritative remote file list for the credential's owner."""

    @abstractmethod
    def persist_remote_metadata(self, record: FileRecord, credential: str) -> None:
        """Store a record in the remote metadata service."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable transport name."""


def _parse_records(items: Any) -> list[FileRecord]:
    if not isinstance(items, list):
        raise TransferFailure("Remote file list is not a list")
    try:
        return [FileRecord.model_validate(item) for item in items]
    except ValidationError as exc:
        raise TransferFailure(f"Remote file list is invalid: {exc}") from exc


class HttpTransport(Transport):
    """Vault API client.

    Endpoints (relative to ``api_base``):
        POST /login                 {username, password} -> {token, user}
        GET  /files                 -> [record, ...]
        POST /files/upload-url      {fileName} -> {signedUrl, path}
        POST /files/download-url    {storagePath} -> {signedUrl}
        POST /files/metadata        record -> {ok}

    Blobs move with plain PUT/GET against the signed URLs.
    """

    def __init__(
        self,
        api_base: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    @property
    def name(self) -> str:
        return "http"

    def _request(
        self,
        method: str,
        url: str,
        credential: Optional[str] = None,
        **kwargs: Any,
    ) -> requests.Response:
        headers = kwargs.pop("headers", {})
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        try:
            resp = self._http.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise TransferFailure(f"{method} {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransferFailure(f"{method} {url}: {resp.status_code} {resp.reason}")
        return resp

    def _api_call(
        self,
        method: str,
        endpoint: str,
        credential: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> Any:
        """Make a JSON API call and return the decoded body.

        Raises:
            TransferFailure: On network error, HTTP error, or non-JSON body.
        """
        resp = self._request(method, f"{self.api_base}{endpoint}", credential, json=data)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransferFailure(f"{method} {endpoint}: invalid JSON response") from exc

    def login(self, username: str, password: str) -> Session:
        """Authenticate and return a Session carrying the bearer token."""
        body = self._api_call(
            "POST", "/login", data={"username": username, "password": password}
        )
        try:
            user = body.get("user") or {}
            return Session(
                user_id=str(user.get("id") or username),
                token=body["token"],
                username=user.get("username", username),
            )
        except (AttributeError, KeyError, TypeError) as exc:
            raise TransferFailure("Login response missing token") from exc

    def request_upload_target(self, blob_name: str, credential: str) -> UploadTarget:
        body = self._api_call(
            "POST", "/files/upload-url", credential, {"fileName": blob_name}
        )
        try:
            return UploadTarget(write_locator=body["signedUrl"], storage_path=body["path"])
        except (KeyError, TypeError, ValidationError) as exc:
            raise TransferFailure("Upload target response is incomplete") from exc

    def request_download_locator(self, storage_path: str, credential: str) -> DownloadLocator:
        body = self._api_call(
            "POST", "/files/download-url", credential, {"storagePath": storage_path}
        )
        try:
            return DownloadLocator(read_locator=body["signedUrl"])
        except (KeyError, TypeError, ValidationError) as exc:
            raise TransferFailure("Download locator response is incomplete") from exc

    def put_bytes(self, write_locator: str, data: bytes) -> None:
        self._request("PUT", write_locator, data=data)

    def get_bytes(self, read_locator: str) -> bytes:
        return self._request("GET", read_locator).content

    def list_remote_records(self, credential: str) -> list[FileRecord]:
        return _parse_records(self._api_call("GET", "/files", credential))

    def persist_remote_metadata(self, record: FileRecord, credential: str) -> None:
        self._api_call("POST", "/files/metadata", credential, record.to_wire())


class DirectoryTransport(Transport):
    """Remote store emulated in a local directory.

    Layout:
        <root>/blobs/<storage path>   ciphertext
        <root>/records.json           remote metadata (camelCase records)

    Locators are absolute filesystem paths.
    """

    def __init__(self, root: Path):
        self.root = root.expanduser()
        self.blobs = self.root / "blobs"
        self.records_file = self.root / "records.json"
        self.blobs.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "directory"

    def _blob_path(self, storage_path: str) -> Path:
        target = (self.blobs / storage_path).resolve()
        if not target.is_relative_to(self.blobs.resolve()):
            raise TransferFailure(f"Storage path escapes the store: {storage_path}")
        return target

    def _read_records(self) -> list[dict]:
        if not self.records_file.exists():
            return []
        try:
            data = json.loads(self.records_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise TransferFailure(f"Cannot read remote records: {exc}") from exc
        if not isinstance(data, list):
            raise TransferFailure("Remote records file is not a list")
        return data

    def request_upload_target(self, blob_name: str, credential: str) -> UploadTarget:
        target = self._blob_path(blob_name)
        return UploadTarget(write_locator=str(target), storage_path=blob_name)

    def request_download_locator(self, storage_path: str, credential: str) -> DownloadLocator:
        target = self._blob_path(storage_path)
        if not target.exists():
            raise TransferFailure(f"No such remote object: {storage_path}")
        return DownloadLocator(read_locator=str(target))

    def put_bytes(self, write_locator: str, data: bytes) -> None:
        target = Path(write_locator)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise TransferFailure(f"Write to {target} failed: {exc}") from exc

    def get_bytes(self, read_locator: str) -> bytes:
        try:
            return Path(read_locator).read_bytes()
        except OSError as exc:
            raise TransferFailure(f"Read from {read_locator} failed: {exc}") from exc

    def list_remote_records(self, credential: str) -> list[FileRecord]:
        with self._lock:
            return _parse_records(self._read_records())

    def persist_remote_metadata(self, record: FileRecord, credential: str) -> None:
        with self._lock:
            records = [r for r in self._read_records() if r.get("id") != record.id]
            records.append(record.to_wire())
            fd, tmp_name = tempfile.mkstemp(prefix=".records.", dir=self.root)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(records, fh, indent=2)
                os.replace(tmp_name, self.records_file)
            except OSError as exc:
                Path(tmp_name).unlink(missing_ok=True)
                raise TransferFailure(f"Cannot write remote records: {exc}") from exc
