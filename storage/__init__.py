from .agent_store import AgentEnvironmentStore
from .file_store import DEFAULT_DB_PATH, DurableFileStore, SQLiteFileStore
from .models import BackupSnapshot, EnvironmentRecord, FileRecord

__all__ = [
    "DEFAULT_DB_PATH",
    "DurableFileStore",
    "SQLiteFileStore",
    "AgentEnvironmentStore",
    "FileRecord",
    "BackupSnapshot",
    "EnvironmentRecord",
]
