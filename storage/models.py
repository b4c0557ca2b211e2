"""Shared storage domain models: provider-neutral data types."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FileRecord:
    """One file's durable content for an agent.

    ``path`` is absolute and normalized (no trailing slash). ``size`` is
    derived from ``content`` and never stored independently of it.
    """

    agent_id: str
    path: str
    content: str
    updated_at: float = 0.0

    @property
    def size(self) -> int:
        return len(self.content)

    def to_backup(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content}


@dataclass(frozen=True)
class BackupSnapshot:
    """Derived summary of an agent's file set."""

    file_count: int
    total_size: int
    updated_at: float


@dataclass(frozen=True)
class EnvironmentRecord:
    """Remembered external environment for an agent (survives restarts)."""

    agent_id: str
    environment_id: str
    provider: str
    updated_at: float
