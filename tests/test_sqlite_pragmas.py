from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from magicplace.storage.sqlite_db import SqliteDB


def _pragma(con: sqlite3.Connection, name: str) -> int | str:
    row = con.execute(f"PRAGMA {name};").fetchone()
    if row is None:
        raise AssertionError(f"missing pragma: {name}")
    return row[0]


def test_sqlite_operational_pragmas_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MAGICPLACE_SQLITE_SYNCHRONOUS", raising=False)
    monkeypatch.setenv("MAGICPLACE_SQLITE_BUSY_TIMEOUT_MS", "1234")

    db = SqliteDB(path=str(tmp_path / "nested" / "sessions.db"))
    db.init_schema()

    with db.connection() as con:
        assert str(_pragma(con, "journal_mode")).lower() == "wal"
        # NORMAL is the default.
        assert int(_pragma(con, "synchronous")) == 1
        assert int(_pragma(con, "foreign_keys")) == 1
        # MEMORY corresponds to 2
        assert int(_pragma(con, "temp_store")) == 2
        assert int(_pragma(con, "busy_timeout")) == 1234


def test_synchronous_override_and_bad_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db = SqliteDB(path=str(tmp_path / "sessions.db"))

    monkeypatch.setenv("MAGICPLACE_SQLITE_SYNCHRONOUS", "full")
    with db.connection() as con:
        assert int(_pragma(con, "synchronous")) == 2

    monkeypatch.setenv("MAGICPLACE_SQLITE_SYNCHRONOUS", "sometimes")
    with db.connection() as con:
        assert int(_pragma(con, "synchronous")) == 1


def test_schema_version_mismatch_refuses_to_open(tmp_path: Path) -> None:
    db = SqliteDB(path=str(tmp_path / "sessions.db"))
    db.init_schema()
    with db.write_tx() as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")

    with pytest.raises(RuntimeError, match="schema_version mismatch"):
        db.init_schema()


def test_failed_write_is_rolled_back(tmp_path: Path) -> None:
    db = SqliteDB(path=str(tmp_path / "sessions.db"))
    db.init_schema()

    with pytest.raises(ValueError):
        with db.write_tx() as con:
            con.execute(
                "INSERT INTO session_keys(owner, salt, record_json, updated_ts_ms) VALUES('o', 's', '{}', 1);"
            )
            raise ValueError("boom")

    with db.connection() as con:
        assert con.execute("SELECT COUNT(*) FROM session_keys;").fetchone()[0] == 0
