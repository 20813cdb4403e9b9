"""Durable key-value storage for memory and learned strategy statistics.

The pipeline talks to persistence only through the ``PersistentStore``
protocol. ``SQLiteStore`` is the bundled implementation: one table of
JSON documents grouped by namespace, guarded by an RLock so the blocking
sqlite calls can be pushed onto worker threads with ``asyncio.to_thread``.
Passing no store at all keeps the pipeline purely in memory.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import orjson
from loguru import logger

DEFAULT_DB_PATH = Path.home() / ".reasonflow" / "state.db"

_DEFAULT_ALLOWED_DIRS = [
    Path.home() / ".reasonflow",
    Path.home() / ".local" / "share" / "reasonflow",
    Path("/tmp"),  # nosec B108 - intentionally allowed for dev/testing
    Path.cwd(),
]


def _get_allowed_db_dirs() -> list[Path]:
    """Get list of allowed directories for database files."""
    env_dirs = os.getenv("REASONFLOW_ALLOWED_DB_DIRS")
    if env_dirs:
        return [Path(d).resolve() for d in env_dirs.split(":") if d]
    return [d.resolve() for d in _DEFAULT_ALLOWED_DIRS]


def validate_db_path(db_path: Path | str) -> Path:
    """Validate a database path against the allowed directories (CWE-22).

    Args:
        db_path: Proposed database path.

    Returns:
        Validated, resolved Path object.

    Raises:
        ValueError: If path is outside allowed directories or contains traversal.

    """
    if str(db_path) == ":memory:":
        return Path(":memory:")

    path_str = str(db_path)
    if ".." in Path(path_str).parts:
        raise ValueError(f"Invalid database path: traversal detected in '{db_path}'")

    path = Path(db_path).resolve()
    allowed_dirs = _get_allowed_db_dirs()
    if not any(path == d or d in path.parents for d in allowed_dirs):
        allowed_list = ", ".join(str(d) for d in allowed_dirs)
        raise ValueError(
            f"Database path '{path}' is outside allowed directories. "
            f"Allowed: {allowed_list}. "
            f"Set REASONFLOW_ALLOWED_DB_DIRS to add custom directories."
        )
    return path


@runtime_checkable
class PersistentStore(Protocol):
    """Async document store keyed by (namespace, key)."""

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None: ...

    async def put(self, namespace: str, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, namespace: str, key: str) -> bool: ...

    async def keys(self, namespace: str) -> list[str]: ...

    async def load_all(self, namespace: str) -> dict[str, dict[str, Any]]: ...


class SQLiteStore:
    """Thread-safe SQLite implementation of ``PersistentStore``.

    Usage:
        store = SQLiteStore(":memory:")
        await store.put("strategies", "analytical_decomposition", {"success_rate": 0.8})
        record = await store.get("strategies", "analytical_decomposition")

    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize store.

        Args:
            db_path: Path to SQLite database. If None, uses the default path.
                Use ":memory:" for an in-process database.

        Raises:
            ValueError: If db_path is outside allowed directories.

        """
        self.db_path = DEFAULT_DB_PATH if db_path is None else validate_db_path(db_path)
        self._lock = threading.RLock()
        self._connection: sqlite3.Connection | None = None
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # Guarded by self._lock
                timeout=30.0,
            )
            self._connection.row_factory = sqlite3.Row
        return self._connection

    def _init_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body BLOB NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                );
                """
            )
            conn.commit()

    # --- Blocking implementations ---

    def _get(self, namespace: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            row = (
                self._get_connection()
                .execute(
                    "SELECT body FROM documents WHERE namespace = ? AND key = ?",
                    (namespace, key),
                )
                .fetchone()
            )
        return orjson.loads(row["body"]) if row else None

    def _put(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        body = orjson.dumps(value, default=str)
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "INSERT OR REPLACE INTO documents (namespace, key, body, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (namespace, key, body, datetime.now().isoformat()),
            )
            conn.commit()

    def _delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                "DELETE FROM documents WHERE namespace = ? AND key = ?", (namespace, key)
            )
            conn.commit()
            return cursor.rowcount > 0

    def _keys(self, namespace: str) -> list[str]:
        with self._lock:
            rows = (
                self._get_connection()
                .execute("SELECT key FROM documents WHERE namespace = ? ORDER BY key", (namespace,))
                .fetchall()
            )
        return [row["key"] for row in rows]

    def _load_all(self, namespace: str) -> dict[str, dict[str, Any]]:
        with self._lock:
            rows = (
                self._get_connection()
                .execute("SELECT key, body FROM documents WHERE namespace = ?", (namespace,))
                .fetchall()
            )
        result: dict[str, dict[str, Any]] = {}
        for row in rows:
            try:
                result[row["key"]] = orjson.loads(row["body"])
            except orjson.JSONDecodeError as e:
                logger.warning(f"Skipping unreadable document {namespace}/{row['key']}: {e}")
        return result

    # --- Async protocol ---

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get, namespace, key)

    async def put(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        await asyncio.to_thread(self._put, namespace, key, value)

    async def delete(self, namespace: str, key: str) -> bool:
        return await asyncio.to_thread(self._delete, namespace, key)

    async def keys(self, namespace: str) -> list[str]:
        return await asyncio.to_thread(self._keys, namespace)

    async def load_all(self, namespace: str) -> dict[str, dict[str, Any]]:
        return await asyncio.to_thread(self._load_all, namespace)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
