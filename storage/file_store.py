"""Durable file store: the authoritative (agent, path) → content record.

Every read-only view of an agent's workspace (listing, glob, search) is
computed from this store, never from a live environment.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from storage.models import BackupSnapshot, FileRecord

DEFAULT_DB_PATH = Path.home() / ".workspace-cache" / "workspace.db"


class DurableFileStore(ABC):
    """Abstract durable store. All operations are synchronous and atomic."""

    @abstractmethod
    def get(self, agent_id: str, path: str) -> FileRecord | None:
        """Return the record, or None when the file does not exist."""
        ...

    @abstractmethod
    def put(self, agent_id: str, path: str, content: str) -> FileRecord:
        """Create or fully replace a file."""
        ...

    @abstractmethod
    def delete(self, agent_id: str, path: str) -> bool:
        """Delete a file. Returns True if it existed."""
        ...

    @abstractmethod
    def list_all(self, agent_id: str) -> list[FileRecord]:
        """All records for an agent, ordered by path."""
        ...

    @abstractmethod
    def clear_all(self, agent_id: str) -> int:
        """Remove every record for an agent. Returns the number removed."""
        ...

    @abstractmethod
    def bulk_replace(self, agent_id: str, records: Iterable[FileRecord | dict]) -> int:
        """Replace an agent's whole file set in one transaction."""
        ...

    @abstractmethod
    def list_agents(self) -> list[str]:
        ...

    def paths(self, agent_id: str) -> list[str]:
        return [r.path for r in self.list_all(agent_id)]

    def snapshot_info(self, agent_id: str) -> BackupSnapshot | None:
        records = self.list_all(agent_id)
        if not records:
            return None
        return BackupSnapshot(
            file_count=len(records),
            total_size=sum(r.size for r in records),
            updated_at=max(r.updated_at for r in records),
        )

    def export_snapshot(self, agent_id: str) -> list[dict[str, str]]:
        """Persisted backup representation: ordered ``{path, content}`` list."""
        return [r.to_backup() for r in self.list_all(agent_id)]

    def import_snapshot(self, agent_id: str, files: list[dict[str, str]]) -> int:
        return self.bulk_replace(agent_id, files)

    def close(self) -> None:
        pass


def _coerce(agent_id: str, item: FileRecord | dict) -> tuple[str, str]:
    if isinstance(item, FileRecord):
        return item.path, item.content
    try:
        return str(item["path"]), str(item["content"])
    except KeyError as e:
        raise ValueError(f"Backup entry for agent {agent_id} is missing {e}") from e


class SQLiteFileStore(DurableFileStore):
    """SQLite-backed store. One shared connection guarded by a lock."""

    def __init__(self, db_path: Path | str | None = None):
        if db_path == ":memory:":
            self.db_path: Path | str = ":memory:"
        else:
            self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = self._init_db()

    def _init_db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10, check_same_thread=False)
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS agent_files (
                agent_id TEXT NOT NULL,
                path TEXT NOT NULL,
                content TEXT NOT NULL,
                size INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL,
                PRIMARY KEY (agent_id, path)
            )
        """)
        conn.commit()
        return conn

    @staticmethod
    def _row(agent_id: str, row: tuple) -> FileRecord:
        return FileRecord(agent_id=agent_id, path=row[0], content=row[1], updated_at=row[2])

    def get(self, agent_id: str, path: str) -> FileRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT path, content, updated_at FROM agent_files WHERE agent_id = ? AND path = ?",
                (agent_id, path),
            ).fetchone()
        return self._row(agent_id, row) if row else None

    def put(self, agent_id: str, path: str, content: str) -> FileRecord:
        now = time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO agent_files (agent_id, path, content, size, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (agent_id, path, content, len(content), now),
            )
            self._conn.commit()
        return FileRecord(agent_id=agent_id, path=path, content=content, updated_at=now)

    def delete(self, agent_id: str, path: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM agent_files WHERE agent_id = ? AND path = ?",
                (agent_id, path),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def list_all(self, agent_id: str) -> list[FileRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, content, updated_at FROM agent_files WHERE agent_id = ? ORDER BY path",
                (agent_id,),
            ).fetchall()
        return [self._row(agent_id, row) for row in rows]

    def paths(self, agent_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT path FROM agent_files WHERE agent_id = ? ORDER BY path",
                (agent_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def snapshot_info(self, agent_id: str) -> BackupSnapshot | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0), MAX(updated_at) FROM agent_files WHERE agent_id = ?",
                (agent_id,),
            ).fetchone()
        if not row or row[0] == 0:
            return None
        return BackupSnapshot(file_count=row[0], total_size=row[1], updated_at=row[2])

    def clear_all(self, agent_id: str) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM agent_files WHERE agent_id = ?", (agent_id,))
            self._conn.commit()
            return cursor.rowcount

    def bulk_replace(self, agent_id: str, records: Iterable[FileRecord | dict]) -> int:
        now = time.time()
        # Later duplicates win, matching put() semantics.
        files = dict(_coerce(agent_id, item) for item in records)
        with self._lock:
            try:
                self._conn.execute("DELETE FROM agent_files WHERE agent_id = ?", (agent_id,))
                self._conn.executemany(
                    """
                    INSERT INTO agent_files (agent_id, path, content, size, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [(agent_id, path, content, len(content), now) for path, content in files.items()],
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return len(files)

    def list_agents(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT DISTINCT agent_id FROM agent_files ORDER BY agent_id").fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
