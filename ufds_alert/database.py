"""SQLite-backed row store mirroring directory users and their SSH keys."""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .models import UserRecord


class DatabaseError(RuntimeError):
    """Raised when the row store cannot satisfy a query."""


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the notifier database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "ufds-alert.sqlite3").resolve(strict=False)


def _as_params(params: Any) -> Sequence[Any]:
    if params is None:
        return ()
    if isinstance(params, (list, tuple)):
        return tuple(params)
    return (params,)


class Database:
    """Thin wrapper around SQLite exposing ``get``/``all``/``run`` queries."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        uuid TEXT PRIMARY KEY,
                        login TEXT NOT NULL,
                        email TEXT,
                        status TEXT,
                        operator INTEGER NOT NULL DEFAULT 0,
                        reader INTEGER NOT NULL DEFAULT 0,
                        roleoper INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS keys (
                        uuid TEXT NOT NULL,
                        fingerprint TEXT NOT NULL,
                        name TEXT,
                        comment TEXT,
                        PRIMARY KEY (uuid, fingerprint)
                    );

                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value TEXT
                    );

                    CREATE INDEX IF NOT EXISTS idx_keys_fingerprint ON keys(fingerprint);
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialise database at {self._path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Generic row access
    # ------------------------------------------------------------------
    def get(self, query: str, params: Any = None) -> Optional[sqlite3.Row]:
        """Return the first row produced by ``query`` or ``None``."""

        try:
            with self._connect() as conn:
                return conn.execute(query, _as_params(params)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Query failed: {exc}") from exc

    def all(self, query: str, params: Any = None) -> List[sqlite3.Row]:
        try:
            with self._connect() as conn:
                return conn.execute(query, _as_params(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Query failed: {exc}") from exc

    def run(self, query: str, params: Any = None) -> None:
        try:
            with self._connect() as conn:
                conn.execute(query, _as_params(params))
        except sqlite3.Error as exc:
            raise DatabaseError(f"Statement failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Directory mirror maintenance
    # ------------------------------------------------------------------
    def upsert_user(self, user: UserRecord) -> None:
        self.run(
            """
            INSERT OR REPLACE INTO users (uuid, login, email, status, operator, reader, roleoper)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.uuid,
                user.login,
                user.email,
                user.status,
                int(user.operator),
                int(user.reader),
                int(user.roleoper),
            ),
        )

    def delete_user(self, uuid: str) -> None:
        self.run("DELETE FROM keys WHERE uuid = ?", (uuid,))
        self.run("DELETE FROM users WHERE uuid = ?", (uuid,))

    def add_key(
        self,
        uuid: str,
        fingerprint: str,
        *,
        name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        self.run(
            "INSERT OR REPLACE INTO keys (uuid, fingerprint, name, comment) VALUES (?, ?, ?, ?)",
            (uuid, fingerprint, name, comment),
        )

    def delete_key(self, uuid: str, fingerprint: str) -> None:
        self.run("DELETE FROM keys WHERE uuid = ? AND fingerprint = ?", (uuid, fingerprint))

    def get_metadata(self, key: str) -> Optional[str]:
        row = self.get("SELECT value FROM metadata WHERE key = ?", (key,))
        if row is None:
            return None
        return row["value"]

    def set_metadata(self, key: str, value: str) -> None:
        self.run("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))


__all__ = ["Database", "DatabaseError", "resolve_database_path"]
