"""Tests for the chatstore command line."""

import json

import pytest
from chatstore import cli, db, files, users


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "chatstore.yaml"
    path.write_text(f"store:\n  dsn: {tmp_path / 'chat.sqlite3'}\n  max_results: 100\n")
    return str(path)


def test_config_shows_effective_options(config_file, tmp_path, capsys):
    cli.config(config=config_file)

    data = json.loads(capsys.readouterr().out)
    assert data["path"] == str(tmp_path / "chat.sqlite3")
    assert data["max_results"] == 100
    assert data["has_auth_token"] is False


def test_missing_config_exits(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.config(config=str(tmp_path / "nope.yaml"))

    assert exc_info.value.code == 1
    assert "Config file not found" in capsys.readouterr().err


def test_init_and_version(config_file, tmp_path, capsys):
    cli.init(config=config_file)
    out = capsys.readouterr().out
    assert f"Schema version {db.SCHEMA_VERSION} ready" in out
    assert (tmp_path / "chat.sqlite3").exists()

    cli.version(config=config_file)
    assert "(up to date)" in capsys.readouterr().out


def test_version_mismatch(config_file, tmp_path, capsys):
    cli.init(config=config_file)
    with db.scoped_connection(tmp_path / "chat.sqlite3") as conn:
        db.record_migration(conn, db.SCHEMA_VERSION + 1, "From the future")
    capsys.readouterr()

    with pytest.raises(SystemExit) as exc_info:
        cli.version(config=config_file)

    assert exc_info.value.code == 1
    assert f"expected {db.SCHEMA_VERSION}" in capsys.readouterr().out


def test_init_reset_drops_data(config_file, capsys):
    cli.init(config=config_file)
    alice = users.user_create()

    cli.init(reset=True, config=config_file)

    assert users.user_get(alice["id"]) is None


def test_files_gc(config_file, capsys):
    cli.init(config=config_file)
    alice = users.user_create()
    files.file_start_upload(alice["id"], "image/png", "/blobs/orphan.png")
    capsys.readouterr()

    cli.gc(older_than_hours=1, config=config_file)
    assert json.loads(capsys.readouterr().out) == []

    cli.gc(older_than_hours=-1, config=config_file)
    assert json.loads(capsys.readouterr().out) == ["/blobs/orphan.png"]
