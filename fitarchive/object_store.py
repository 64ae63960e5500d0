"""
Transactional object store.

Maps string keys to JSON documents. Two storage engines exist:

- ``sqlite`` (current): a single SQLite file in WAL mode. Nested
  transactions are SQLite savepoints.
- ``jsondir`` (legacy): one JSON file per key, spread over hashed
  subdirectories ``000`` .. ``fff``. Archives created by early versions use
  this layout; the migration pipeline converts them. The ``000``
  subdirectory doubles as the marker that identifies the engine.

Every write made inside ``transaction()`` becomes visible together on
commit, or not at all if the block raises.
"""

import hashlib
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import quote, unquote

from .errors import StorageCorruption

logger = logging.getLogger(__name__)

ENGINE_SQLITE = "sqlite"
ENGINE_JSONDIR = "jsondir"
ENGINES = (ENGINE_SQLITE, ENGINE_JSONDIR)

# Current on-disk format of the sqlite engine (PRAGMA user_version)
ENGINE_VERSION = 1

SQLITE_FILENAME = "objects.db"
LEGACY_MARKER = "000"

_DELETED = object()


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


class ObjectStore:
    """
    Base class for storage engines.

    Subclasses implement raw access plus the begin/commit/rollback hooks;
    nesting of ``transaction()`` blocks is handled here.
    """

    engine = ""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._depth = 0

    # -- Engine hooks ---------------------------------------------------------

    def _begin(self, depth: int) -> None:
        raise NotImplementedError

    def _commit(self, depth: int) -> None:
        raise NotImplementedError

    def _rollback(self, depth: int) -> None:
        raise NotImplementedError

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError

    def check(self) -> int:
        raise NotImplementedError

    def sync(self) -> None:
        raise NotImplementedError

    def compact(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    # -- Shared behavior ------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["ObjectStore"]:
        """
        Group writes so they are applied atomically.

        Nested blocks join the enclosing transaction; a failing inner block
        only discards its own writes (the exception still propagates).
        """
        depth = self._depth
        self._begin(depth)
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            self._rollback(depth)
            raise
        else:
            self._depth -= 1
            self._commit(depth)

    def copy(self, new_path: Path, engine: str = ENGINE_SQLITE) -> None:
        """Copy every object into a new store at new_path using the given engine."""
        target = open_store(new_path, engine)
        try:
            with target.transaction():
                for key in self.keys():
                    target.set(key, self.get(key))
            target.sync()
        finally:
            target.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SqliteObjectStore(ObjectStore):
    """SQLite-backed object store (current engine)."""

    engine = ENGINE_SQLITE

    def __init__(self, path: Path):
        super().__init__(path)
        self._db_path = self.path / SQLITE_FILENAME
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._init_db()
        except sqlite3.DatabaseError as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise StorageCorruption(f"Cannot open {self._db_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self.path.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(str(self._db_path), isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version > ENGINE_VERSION:
            raise StorageCorruption(
                f"{self._db_path} uses engine format {version}, newer than "
                f"supported ({ENGINE_VERSION}). Upgrade fitarchive."
            )
        if version < ENGINE_VERSION:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS objects (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            self._conn.execute(f"PRAGMA user_version = {ENGINE_VERSION}")

    def _begin(self, depth: int) -> None:
        if depth == 0:
            self._conn.execute("BEGIN IMMEDIATE")
        else:
            self._conn.execute(f"SAVEPOINT sp{depth}")

    def _commit(self, depth: int) -> None:
        if depth == 0:
            self._conn.execute("COMMIT")
        else:
            self._conn.execute(f"RELEASE sp{depth}")

    def _rollback(self, depth: int) -> None:
        if depth == 0:
            self._conn.execute("ROLLBACK")
        else:
            self._conn.execute(f"ROLLBACK TO sp{depth}")
            self._conn.execute(f"RELEASE sp{depth}")

    def get(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute(
            "SELECT value FROM objects WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO objects (key, value) VALUES (?, ?)",
            (key, _encode(value)),
        )

    def delete(self, key: str) -> bool:
        cursor = self._conn.execute("DELETE FROM objects WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        return [row[0] for row in self._conn.execute("SELECT key FROM objects ORDER BY key")]

    def check(self) -> int:
        """
        Verify the database file and every stored value.

        Returns:
            Number of objects checked

        Raises:
            StorageCorruption: If any problem was found
        """
        problems: list[str] = []
        try:
            rows = self._conn.execute("PRAGMA integrity_check").fetchall()
            results = [r[0] for r in rows]
            if results != ["ok"]:
                problems.extend(results)
            count = 0
            for key, value in self._conn.execute("SELECT key, value FROM objects"):
                count += 1
                try:
                    json.loads(value)
                except json.JSONDecodeError as e:
                    problems.append(f"{key}: unreadable value ({e})")
        except sqlite3.DatabaseError as e:
            raise StorageCorruption(f"{self._db_path}: {e}", [str(e)]) from e
        if problems:
            raise StorageCorruption(
                f"{self._db_path}: {len(problems)} problem(s) found", problems
            )
        return count

    def sync(self) -> None:
        """Flush the write-ahead log into the main database file."""
        if self._conn is not None and not self.in_transaction:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")

    def compact(self) -> None:
        """Reclaim free pages. Not allowed inside a transaction."""
        if self.in_transaction:
            raise RuntimeError("Cannot compact inside a transaction")
        self._conn.execute("VACUUM")
        self.sync()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            if self.in_transaction:
                self._conn.execute("ROLLBACK")
                self._depth = 0
            self._conn.close()
            self._conn = None


class JsonDirObjectStore(ObjectStore):
    """
    Legacy engine: one JSON file per key.

    Uncommitted writes are kept in per-level overlays and written with
    write-to-temp + rename when the outermost transaction commits.
    """

    engine = ENGINE_JSONDIR

    def __init__(self, path: Path):
        super().__init__(path)
        self.path.mkdir(parents=True, exist_ok=True)
        (self.path / LEGACY_MARKER).mkdir(exist_ok=True)
        self._overlays: list[dict[str, Any]] = []

    def _file_for(self, key: str) -> Path:
        bucket = hashlib.sha1(key.encode("utf-8")).hexdigest()[:3]
        return self.path / bucket / (quote(key, safe="") + ".json")

    def _begin(self, depth: int) -> None:
        self._overlays.append({})

    def _commit(self, depth: int) -> None:
        overlay = self._overlays.pop()
        if self._overlays:
            self._overlays[-1].update(overlay)
            return
        for key, value in overlay.items():
            if value is _DELETED:
                self._remove_file(key)
            else:
                self._write_file(key, value)

    def _rollback(self, depth: int) -> None:
        self._overlays.pop()

    def _write_file(self, key: str, value: Any) -> None:
        path = self._file_for(key)
        path.parent.mkdir(exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(_encode(value))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _remove_file(self, key: str) -> bool:
        path = self._file_for(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def get(self, key: str, default: Any = None) -> Any:
        for overlay in reversed(self._overlays):
            if key in overlay:
                value = overlay[key]
                return default if value is _DELETED else json.loads(_encode(value))
        path = self._file_for(key)
        if not path.exists():
            return default
        return json.loads(path.read_text(encoding="utf-8"))

    def set(self, key: str, value: Any) -> None:
        if self._overlays:
            self._overlays[-1][key] = json.loads(_encode(value))
        else:
            self._write_file(key, value)

    def delete(self, key: str) -> bool:
        existed = self.get(key, _DELETED) is not _DELETED
        if self._overlays:
            self._overlays[-1][key] = _DELETED
        else:
            self._remove_file(key)
        return existed

    def _disk_keys(self) -> Iterator[tuple[str, Path]]:
        for bucket in sorted(self.path.iterdir()):
            if not bucket.is_dir():
                continue
            for entry in sorted(bucket.glob("*.json")):
                yield unquote(entry.name[:-len(".json")]), entry

    def keys(self) -> list[str]:
        found = {key for key, _ in self._disk_keys()}
        for overlay in self._overlays:
            for key, value in overlay.items():
                if value is _DELETED:
                    found.discard(key)
                else:
                    found.add(key)
        return sorted(found)

    def check(self) -> int:
        problems: list[str] = []
        count = 0
        for key, entry in self._disk_keys():
            count += 1
            if entry != self._file_for(key):
                problems.append(f"{key}: stored in wrong bucket {entry.parent.name}")
            try:
                json.loads(entry.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                problems.append(f"{key}: unreadable value ({e})")
        if problems:
            raise StorageCorruption(f"{self.path}: {len(problems)} problem(s) found", problems)
        return count

    def sync(self) -> None:
        # Files are fsynced as they are written
        pass

    def compact(self) -> None:
        """Remove empty bucket directories (the marker bucket stays)."""
        if self.in_transaction:
            raise RuntimeError("Cannot compact inside a transaction")
        for bucket in self.path.iterdir():
            if bucket.is_dir() and bucket.name != LEGACY_MARKER and not any(bucket.iterdir()):
                bucket.rmdir()

    def close(self) -> None:
        if self._overlays:
            logger.warning("Closing %s with an open transaction; changes discarded", self.path)
        self._overlays = []
        self._depth = 0


def detect_engine(path: Path) -> Optional[str]:
    """Return the engine of the store at path, or None if there is none."""
    path = Path(path)
    if (path / LEGACY_MARKER).is_dir():
        return ENGINE_JSONDIR
    if (path / SQLITE_FILENAME).exists():
        return ENGINE_SQLITE
    return None


def open_store(path: Path, engine: str = ENGINE_SQLITE) -> ObjectStore:
    """Open (creating if needed) the object store at path."""
    if engine == ENGINE_SQLITE:
        return SqliteObjectStore(path)
    if engine == ENGINE_JSONDIR:
        return JsonDirObjectStore(path)
    raise ValueError(f"Unknown storage engine: {engine!r}. Available: {', '.join(ENGINES)}")
