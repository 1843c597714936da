"""
Key/value storage adapters for the repository cache.

The cache only needs get/set/remove/list(prefix) over string values. Three
backends are provided:
- MemoryStorageAdapter: process-local dict, for tests and one-off runs.
- FileStorageAdapter: one JSON file per key under a directory.
- TableStorageAdapter: a key/value table in SQLite (optionally scoped by user).

The adapter is always passed in explicitly; nothing here inspects the
runtime environment to pick one.
"""

import logging
import os
import re
import sqlite3
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Protocol, runtime_checkable

logger = logging.getLogger("repo_scrapper")

# Errors a backend may raise on a damaged or unreachable store.
STORAGE_ERRORS = (OSError, ValueError, sqlite3.Error)


@runtime_checkable
class StorageAdapter(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def list(self, prefix: str = "") -> list[str]: ...


class MemoryStorageAdapter:
    """In-memory adapter. Thread-safe; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class FileStorageAdapter:
    """
    Persistent adapter storing each key as <directory>/<key>.json.

    Writes go to a temp file and are moved into place with os.replace, so a
    reader never sees a half-written value.
    """

    suffix = ".json"

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}{self.suffix}"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp_", suffix=self.suffix)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def list(self, prefix: str = "") -> list[str]:
        keys = [
            p.name[: -len(self.suffix)]
            for p in self.directory.glob(f"*{self.suffix}")
            if not p.name.startswith(".tmp_")
        ]
        return sorted(k for k in keys if k.startswith(prefix))


class TableStorageAdapter:
    """
    Adapter backed by a key/value table in SQLite.

    Rows are (key, value, user_id, updated_at) with (key, user_id) unique, so
    several users can keep separate caches for the same repository. A new
    connection is opened per operation, which keeps the adapter safe to share
    across flow threads.
    """

    def __init__(self, db_path: str | os.PathLike, table: str = "repo_cache", user_id: str = "") -> None:
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.db_path = str(db_path)
        self.table = table
        self.user_id = user_id or ""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table} ("
                "key TEXT NOT NULL, value TEXT NOT NULL, user_id TEXT NOT NULL DEFAULT '', "
                "updated_at REAL NOT NULL, PRIMARY KEY (key, user_id))"
            )

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        try:
            conn.execute("PRAGMA busy_timeout = 30000")
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT value FROM {self.table} WHERE key = ? AND user_id = ?",
                (key, self.user_id),
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO {self.table} (key, value, user_id, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(key, user_id) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, self.user_id, time.time()),
            )

    def remove(self, key: str) -> None:
        with self._conn() as conn:
            conn.execute(f"DELETE FROM {self.table} WHERE key = ? AND user_id = ?", (key, self.user_id))

    def list(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT key FROM {self.table} WHERE user_id = ? AND key LIKE ? ESCAPE '\\' ORDER BY key",
                (self.user_id, f"{escaped}%"),
            ).fetchall()
        # LIKE is case-insensitive for ASCII in SQLite
        return [r[0] for r in rows if r[0].startswith(prefix)]


def create_storage_adapter(kind: str, **options: str) -> StorageAdapter:
    """
    Build an adapter from an explicit configuration value.

    kind: "memory", "file" (options: directory) or "table" (options: db_path,
    table, user_id).
    """
    kind = (kind or "").strip().lower()
    if kind == "memory":
        return MemoryStorageAdapter()
    if kind == "file":
        return FileStorageAdapter(options.get("directory") or ".repo_cache")
    if kind == "table":
        return TableStorageAdapter(
            options.get("db_path") or ".repo_cache/cache.db",
            table=options.get("table") or "repo_cache",
            user_id=options.get("user_id") or "",
        )
    raise ValueError(f"Unknown storage adapter kind: {kind!r} (expected memory, file or table)")
