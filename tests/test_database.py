from __future__ import annotations

from pathlib import Path

import pytest

from ufds_alert.database import Database, DatabaseError, resolve_database_path
from ufds_alert.models import UserRecord

from helpers import make_user


def test_initialize_is_idempotent(database: Database) -> None:
    database.initialize()

    tables = {row["name"] for row in database.all("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"users", "keys", "metadata"} <= tables


def test_get_returns_none_for_missing_row(database: Database) -> None:
    assert database.get("SELECT * FROM users WHERE uuid = ?", "missing") is None


def test_upserted_user_round_trips(database: Database) -> None:
    user = make_user("U1", "root", "root@example.com", reader=True)
    database.upsert_user(user)

    row = database.get("SELECT * FROM users WHERE uuid = ?", ("U1",))
    assert row["reader"] == 1
    assert UserRecord.from_row(row) == user

    database.upsert_user(make_user("U1", "root", "new@example.com"))
    assert database.get("SELECT email FROM users WHERE uuid = ?", ("U1",))["email"] == "new@example.com"


def test_keys_can_be_searched_by_fingerprint(database: Database) -> None:
    database.add_key("U1", "aa11", name="laptop")
    database.add_key("U2", "aa11", name="shared", comment="bob@host")
    database.add_key("U2", "bb22", name="other")

    rows = database.all(
        "SELECT uuid, name, comment FROM keys WHERE fingerprint = ? AND uuid != ?",
        ("aa11", "U1"),
    )
    assert [(row["uuid"], row["name"], row["comment"]) for row in rows] == [("U2", "shared", "bob@host")]

    database.delete_key("U2", "aa11")
    assert database.all("SELECT * FROM keys WHERE fingerprint = ?", ("aa11",))[0]["uuid"] == "U1"


def test_delete_user_removes_keys(database: Database) -> None:
    database.upsert_user(make_user("U1"))
    database.add_key("U1", "aa11")

    database.delete_user("U1")

    assert database.get("SELECT * FROM users WHERE uuid = ?", ("U1",)) is None
    assert database.all("SELECT * FROM keys WHERE uuid = ?", ("U1",)) == []


def test_metadata_upsert(database: Database) -> None:
    assert database.get_metadata("last_key_mismatch") is None

    database.set_metadata("last_key_mismatch", "2021-03-01T12:00:00+00:00")
    database.set_metadata("last_key_mismatch", "2021-03-01T13:00:00+00:00")

    assert database.get_metadata("last_key_mismatch") == "2021-03-01T13:00:00+00:00"
    assert len(database.all("SELECT * FROM metadata")) == 1


def test_sqlite_errors_become_database_errors(database: Database) -> None:
    with pytest.raises(DatabaseError):
        database.get("SELECT * FROM no_such_table")
    with pytest.raises(DatabaseError):
        database.all("SELECT * FROM no_such_table")
    with pytest.raises(DatabaseError):
        database.run("INSERT INTO no_such_table VALUES (1)")


def test_resolve_database_path(tmp_path: Path) -> None:
    explicit = resolve_database_path(str(tmp_path / "custom.sqlite3"))
    assert explicit == (tmp_path / "custom.sqlite3").resolve()

    default = resolve_database_path(None)
    assert default.name == "ufds-alert.sqlite3"
    assert default.parent.name == "data"
