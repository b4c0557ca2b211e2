"""Sandbox: durable agent workspaces over ephemeral execution environments.

Usage:
    from sandbox import create_workspace, WorkspaceConfig

    config = WorkspaceConfig.load("e2b")
    service = create_workspace(config)

    ws = service.for_agent("agent-1")
    await ws.write("notes.md", "hello")
    await ws.execute("cat notes.md")
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from sandbox.config import WorkspaceConfig, resolve_config_name
from sandbox.errors import (
    CommandTimeoutError,
    EnvironmentGoneError,
    EnvironmentUnavailableError,
    InvalidPathError,
    NotFoundError,
    PartialBatchFailure,
    ReplaceNotFoundError,
    WorkspaceError,
)

if TYPE_CHECKING:
    from sandbox.provider import EnvironmentProvider
    from sandbox.workspace import WorkspaceService


def create_provider(config: WorkspaceConfig) -> EnvironmentProvider:
    provider = config.provider

    if provider == "local":
        from sandbox.providers.local import LocalProvider

        return LocalProvider(root_dir=config.local.root_dir, workspace_root=config.local.cwd)

    if provider == "e2b":
        from sandbox.providers.e2b import E2BProvider

        return E2BProvider(
            api_key=config.e2b.api_key,
            template=config.e2b.template,
            default_cwd=config.e2b.cwd,
            timeout=config.e2b.timeout,
        )

    raise ValueError(f"Unknown sandbox provider: {provider}")


def create_workspace(config: WorkspaceConfig, db_path: Path | str | None = None) -> WorkspaceService:
    """Factory: build a WorkspaceService from config.

    Args:
        config: WorkspaceConfig (from WorkspaceConfig.load() or inline)
        db_path: SQLite path for files and environment records
            (defaults to config.db_path, then ~/.workspace-cache/workspace.db)
    """
    from sandbox.workspace import WorkspaceService
    from storage import AgentEnvironmentStore, SQLiteFileStore

    db_path = db_path or config.db_path
    provider = create_provider(config)
    store = SQLiteFileStore(db_path)
    records = AgentEnvironmentStore(db_path)
    return WorkspaceService(config, store, records, provider)


__all__ = [
    "CommandTimeoutError",
    "EnvironmentGoneError",
    "EnvironmentUnavailableError",
    "InvalidPathError",
    "NotFoundError",
    "PartialBatchFailure",
    "ReplaceNotFoundError",
    "WorkspaceConfig",
    "WorkspaceError",
    "create_provider",
    "create_workspace",
    "resolve_config_name",
]
