"""
Tests for the vaultx command line.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from vaultx.cli import main
from vaultx.models import FileRecord
from vaultx.store import MetadataStore

PASSWORD = "correct horse battery staple"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def plain_file(tmp_path: Path) -> Path:
    path = tmp_path / "notes.txt"
    path.write_text("meeting at noon")
    return path


def _add(runner: CliRunner, home: Path, path: Path, owner: str = "u1") -> str:
    result = runner.invoke(
        main,
        ["file", "add", str(path), "--owner", owner, "--password", PASSWORD, "--home", str(home)],
    )
    assert result.exit_code == 0, result.output
    listing = runner.invoke(main, ["file", "ls", "--json", "--home", str(home)])
    return json.loads(listing.output)[-1]["id"]


class TestTopLevel:
    """Tests for the root command group."""

    def test_help(self, runner: CliRunner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for group in ("file", "perm", "sync", "logs", "config", "user"):
            assert group in result.output

    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestFileCommands:
    """Tests for `vaultx file ...`."""

    def test_add_and_list(self, runner, fast_config_home, plain_file):
        file_id = _add(runner, fast_config_home, plain_file)

        result = runner.invoke(main, ["file", "ls", "--json", "--home", str(fast_config_home)])
        records = json.loads(result.output)
        assert [r["id"] for r in records] == [file_id]
        assert records[0]["originalName"] == "notes.txt"
        assert records[0]["version"] == 1

    def test_table_listing(self, runner, fast_config_home, plain_file):
        _add(runner, fast_config_home, plain_file)
        result = runner.invoke(main, ["file", "ls", "--home", str(fast_config_home)])
        assert result.exit_code == 0
        assert "notes.txt" in result.output

    def test_empty_listing(self, runner, fast_config_home):
        result = runner.invoke(main, ["file", "ls", "--home", str(fast_config_home)])
        assert result.exit_code == 0
        assert "No files" in result.output

    def test_get(self, runner, fast_config_home, plain_file, tmp_path):
        file_id = _add(runner, fast_config_home, plain_file)
        out = tmp_path / "out"
        out.mkdir()

        result = runner.invoke(main, [
            "file", "get", file_id, "--dest", str(out),
            "--password", PASSWORD, "--home", str(fast_config_home),
        ])

        assert result.exit_code == 0, result.output
        assert (out / "notes.txt").read_text() == "meeting at noon"

    def test_get_wrong_password(self, runner, fast_config_home, plain_file, tmp_path):
        file_id = _add(runner, fast_config_home, plain_file)
        result = runner.invoke(main, [
            "file", "get", file_id, "--dest", str(tmp_path / "x.txt"),
            "--password", "wrong password", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "Error" in result.output
        assert not (tmp_path / "x.txt").exists()

    def test_get_unknown(self, runner, fast_config_home, tmp_path):
        result = runner.invoke(main, [
            "file", "get", "file-nope", "--dest", str(tmp_path),
            "--password", PASSWORD, "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_name(self, runner, fast_config_home, plain_file):
        file_id = _add(runner, fast_config_home, plain_file)
        result = runner.invoke(main, [
            "file", "name", file_id, "--password", PASSWORD, "--home", str(fast_config_home),
        ])
        assert result.exit_code == 0
        assert result.output.strip() == "notes.txt"

    def test_rm(self, runner, fast_config_home, plain_file):
        file_id = _add(runner, fast_config_home, plain_file)
        result = runner.invoke(main, [
            "file", "rm", file_id, "--user", "u1", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 0
        listing = runner.invoke(main, ["file", "ls", "--json", "--home", str(fast_config_home)])
        assert json.loads(listing.output) == []

    def test_writes_log_file(self, runner, fast_config_home, plain_file):
        _add(runner, fast_config_home, plain_file)
        log = fast_config_home / "logs" / "vaultx.log"
        assert log.exists()
        assert "Added notes.txt" in log.read_text()


class TestPermCommands:
    """Tests for `vaultx perm ...`."""

    def test_grant_list_revoke(self, runner, fast_config_home, plain_file):
        file_id = _add(runner, fast_config_home, plain_file)
        home = ["--home", str(fast_config_home)]

        granted = runner.invoke(main, ["perm", "grant", file_id, "u2", "read", *home])
        assert granted.exit_code == 0
        assert "Granted" in granted.output

        again = runner.invoke(main, ["perm", "grant", file_id, "u2", "read", *home])
        assert "already" in again.output

        listing = runner.invoke(main, ["perm", "ls", file_id, *home])
        assert "u2" in listing.output

        revoked = runner.invoke(main, ["perm", "revoke", file_id, "u2", "read", *home])
        assert "Revoked" in revoked.output

        shared = runner.invoke(main, ["file", "ls", "--json", "--user", "u2", *home])
        assert json.loads(shared.output) == []

    def test_invalid_permission(self, runner, fast_config_home):
        result = runner.invoke(main, [
            "perm", "grant", "f1", "u2", "admin", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 2

    def test_unknown_file(self, runner, fast_config_home):
        result = runner.invoke(main, [
            "perm", "grant", "file-nope", "u2", "write", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1


class TestSyncCommands:
    """Tests for `vaultx sync ...`."""

    def test_remote_directory_round_trip(self, runner, fast_config_home, plain_file, tmp_path):
        file_id = _add(runner, fast_config_home, plain_file)
        remote = tmp_path / "remote"

        result = runner.invoke(main, [
            "sync", "remote", "--remote-dir", str(remote), "--user-id", "u1",
            "--home", str(fast_config_home),
        ])

        assert result.exit_code == 0, result.output
        assert "1 uploaded" in result.output
        records = json.loads((remote / "records.json").read_text())
        assert records[0]["id"] == file_id
        assert records[0]["version"] == 2

        status = runner.invoke(main, ["sync", "status", "--home", str(fast_config_home)])
        assert status.exit_code == 0
        assert "Uploads: 1" in status.output

    def test_remote_dir_requires_user(self, runner, fast_config_home, tmp_path):
        result = runner.invoke(main, [
            "sync", "remote", "--remote-dir", str(tmp_path / "r"),
            "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "--user-id" in result.output

    def test_remote_failure_exit_code(self, runner, fast_config_home, tmp_path):
        MetadataStore(fast_config_home).add_file_record(FileRecord(
            id="f1",
            original_name="lost.txt",
            encrypted_name="lost.enc",
            owner_id="u1",
            last_modified_utc=datetime(2026, 1, 1, tzinfo=timezone.utc),
        ))
        result = runner.invoke(main, [
            "sync", "remote", "--remote-dir", str(tmp_path / "r"), "--user-id", "u1",
            "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "1 failed" in result.output

    def test_mirror(self, runner, fast_config_home, plain_file, tmp_path):
        _add(runner, fast_config_home, plain_file)
        vault_dir = fast_config_home / "vault"
        replica = tmp_path / "replica"
        replica.mkdir()

        result = runner.invoke(main, [
            "sync", "mirror", str(vault_dir), str(replica), "--home", str(fast_config_home),
        ])

        assert result.exit_code == 0, result.output
        assert "1 copies written" in result.output
        assert sorted(p.name for p in replica.iterdir()) == sorted(
            p.name for p in vault_dir.iterdir()
        )

    def test_mirror_needs_two_dirs(self, runner, fast_config_home, tmp_path):
        result = runner.invoke(main, [
            "sync", "mirror", str(tmp_path), "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "two replica" in result.output

    def test_mirror_uses_configured_replicas(self, runner, fast_config_home, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        set_result = runner.invoke(main, [
            "config", "set-replicas", str(a), str(b), "--home", str(fast_config_home),
        ])
        assert set_result.exit_code == 0

        result = runner.invoke(main, ["sync", "mirror", "--home", str(fast_config_home)])
        assert result.exit_code == 0, result.output
        assert "2 replicas" in result.output


class TestAuditAndConfigCommands:
    """Tests for `vaultx logs` and `vaultx config ...`."""

    def test_logs(self, runner, fast_config_home, plain_file):
        _add(runner, fast_config_home, plain_file)
        result = runner.invoke(main, ["logs", "--json", "--home", str(fast_config_home)])
        entries = json.loads(result.output)
        assert entries[0]["action"] == "UPLOAD"
        assert entries[0]["user_id"] == "u1"

    def test_logs_empty(self, runner, fast_config_home):
        result = runner.invoke(main, ["logs", "--home", str(fast_config_home)])
        assert result.exit_code == 0
        assert "empty" in result.output

    def test_config_show(self, runner, fast_config_home):
        result = runner.invoke(main, ["config", "show", "--home", str(fast_config_home)])
        assert result.exit_code == 0
        assert "iterations: 1000" in result.output
        assert "debounce_ms: 300" in result.output


class TestUserCommands:
    """Tests for `vaultx user ...`."""

    def test_add_and_login(self, runner, fast_config_home):
        home = ["--home", str(fast_config_home)]
        added = runner.invoke(main, ["user", "add", "alice", "--password", "s3cret", *home])
        assert added.exit_code == 0, added.output
        assert "alice" in added.output

        login = runner.invoke(main, ["user", "login", "alice", "--password", "s3cret", *home])
        assert login.exit_code == 0
        assert "Login successful" in login.output

    def test_bad_login(self, runner, fast_config_home):
        result = runner.invoke(main, [
            "user", "login", "alice", "--password", "nope", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "Invalid credentials" in result.output

    def test_default_admin_seeded(self, runner, fast_config_home):
        result = runner.invoke(main, [
            "user", "login", "admin", "--password", "password", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 0, result.output

    def test_ls_hides_hashes(self, runner, fast_config_home):
        home = ["--home", str(fast_config_home)]
        runner.invoke(main, ["user", "add", "bob", "--password", "pw", "--role", "admin", *home])

        result = runner.invoke(main, ["user", "ls", "--json", *home])

        users = json.loads(result.output)
        assert [(u["username"], u["role"]) for u in users] == [("admin", "admin"), ("bob", "admin")]
        assert all("passwordHash" not in u for u in users)

    def test_duplicate_user(self, runner, fast_config_home):
        home = ["--home", str(fast_config_home)]
        result = runner.invoke(main, ["user", "add", "admin", "--password", "pw", *home])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_passwd(self, runner, fast_config_home):
        home = ["--home", str(fast_config_home)]
        changed = runner.invoke(main, ["user", "passwd", "admin", "--password", "fresh", *home])
        assert changed.exit_code == 0, changed.output

        old = runner.invoke(main, ["user", "login", "admin", "--password", "password", *home])
        new = runner.invoke(main, ["user", "login", "admin", "--password", "fresh", *home])
        assert old.exit_code == 1
        assert new.exit_code == 0

    def test_passwd_unknown_user(self, runner, fast_config_home):
        result = runner.invoke(main, [
            "user", "passwd", "ghost", "--password", "x", "--home", str(fast_config_home),
        ])
        assert result.exit_code == 1
        assert "not found" in result.output
