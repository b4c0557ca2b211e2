"""Agent environment record: remembers which external environment an agent last used.

The record outlives the process so a restart can try reconnecting before
falling back to creating a fresh environment.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path

from storage.file_store import DEFAULT_DB_PATH
from storage.models import EnvironmentRecord


class AgentEnvironmentStore:
    def __init__(self, db_path: Path | str | None = None):
        if db_path == ":memory:":
            self.db_path: Path | str = ":memory:"
        else:
            self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), timeout=10, check_same_thread=False)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS agent_environments (
                agent_id TEXT PRIMARY KEY,
                environment_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self._conn.commit()

    def get(self, agent_id: str) -> str | None:
        record = self.get_record(agent_id)
        return record.environment_id if record else None

    def get_record(self, agent_id: str) -> EnvironmentRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT agent_id, environment_id, provider, updated_at FROM agent_environments WHERE agent_id = ?",
                (agent_id,),
            ).fetchone()
        return EnvironmentRecord(*row) if row else None

    def set(self, agent_id: str, environment_id: str, provider: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO agent_environments (agent_id, environment_id, provider, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (agent_id, environment_id, provider, time.time()),
            )
            self._conn.commit()

    def clear(self, agent_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM agent_environments WHERE agent_id = ?", (agent_id,))
            self._conn.commit()
            return cursor.rowcount > 0

    def list_all(self) -> list[EnvironmentRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT agent_id, environment_id, provider, updated_at FROM agent_environments ORDER BY agent_id"
            ).fetchall()
        return [EnvironmentRecord(*row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
