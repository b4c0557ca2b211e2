"""Per-agent workspace bundle.

WorkspaceService wires one provider, one durable store and one record store
into the manager, executor and sync scheduler they share. for_agent() hands
out the tool-facing surface for a single agent.
"""

from __future__ import annotations

import logging

from core.command.executor import CommandExecutor, ExecuteResponse
from core.filesystem.operations import FileOperations
from core.filesystem.types import (
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)
from sandbox.config import WorkspaceConfig
from sandbox.manager import EnvironmentHandle, EnvironmentManager
from sandbox.provider import EnvironmentProvider
from sandbox.sync import BackgroundSyncScheduler, SyncReport, SyncStatus
from storage.agent_store import AgentEnvironmentStore
from storage.file_store import DurableFileStore

logger = logging.getLogger(__name__)


class AgentWorkspace:
    """Everything an agent's tools can do, bound to its agent_id."""

    def __init__(self, agent_id: str, files: FileOperations, executor: CommandExecutor, service: WorkspaceService):
        self.agent_id = agent_id
        self.files = files
        self.executor = executor
        self._service = service

    @property
    def root(self) -> str:
        return self.files.root

    def list(self, path: str | None = None) -> list[FileInfo]:
        return self.files.list(path)

    def read(self, path: str, offset: int = 0, limit: int | None = None) -> str:
        return self.files.read(path, offset, limit)

    def glob(self, pattern: str, path: str | None = None) -> list[FileInfo] | str:
        return self.files.glob(pattern, path)

    def search(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        return self.files.search(pattern, path, glob)

    async def write(self, path: str, content: str) -> WriteResult:
        return await self.files.write(path, content)

    async def edit(self, path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        return await self.files.edit(path, old_string, new_string, replace_all)

    async def upload_files(self, files: list[tuple[str, bytes]], *, strict: bool = False) -> list[FileUploadResponse]:
        return await self.files.upload_files(files, strict=strict)

    async def download_files(self, paths: list[str], *, strict: bool = False) -> list[FileDownloadResponse]:
        return await self.files.download_files(paths, strict=strict)

    async def execute(self, command: str, timeout: float | None = None) -> ExecuteResponse:
        return await self.executor.execute(self.agent_id, command, timeout)

    async def sync_now(self) -> SyncReport | None:
        return await self._service.scheduler.sync_now(self.agent_id)

    def sync_status(self) -> SyncStatus:
        return self._service.scheduler.status(self.agent_id)


class WorkspaceService:
    def __init__(
        self,
        config: WorkspaceConfig,
        store: DurableFileStore,
        records: AgentEnvironmentStore,
        provider: EnvironmentProvider,
    ):
        self.config = config
        self.store = store
        self.records = records
        self.provider = provider
        self.manager = EnvironmentManager(provider, records, restore_on_reconnect=config.restore_on_reconnect)
        self.scheduler = BackgroundSyncScheduler(
            self.manager,
            store,
            interval=config.sync.interval_sec,
            debounce=config.sync.debounce_sec,
            exclude=config.sync.exclude,
        )
        self.executor = CommandExecutor(
            self.manager,
            store,
            timeout=config.command_timeout,
            max_output_chars=config.max_output_chars,
            cwd=provider.workspace_root,
            on_complete=self._schedule_sync,
        )
        self._workspaces: dict[str, AgentWorkspace] = {}

    def _schedule_sync(self, agent_id: str) -> None:
        # Only called once a live environment exists for the agent.
        if not self.config.sync.enabled:
            return
        self.scheduler.start(agent_id)
        self.scheduler.trigger(agent_id)

    def for_agent(self, agent_id: str) -> AgentWorkspace:
        workspace = self._workspaces.get(agent_id)
        if workspace is None:
            files = FileOperations(
                agent_id,
                self.store,
                self.manager,
                root=self.provider.workspace_root,
                read_limit=self.config.read_limit,
                on_write=self._schedule_sync,
            )
            workspace = AgentWorkspace(agent_id, files, self.executor, self)
            self._workspaces[agent_id] = workspace
        return workspace

    async def ensure_environment(self, agent_id: str) -> EnvironmentHandle:
        """Eagerly acquire the agent's environment, restoring stored files."""
        return await self.manager.acquire(agent_id, self.store.list_all(agent_id))

    async def release(self, agent_id: str, *, destroy: bool = False) -> None:
        self.scheduler.stop(agent_id)
        await self.manager.release(agent_id, destroy=destroy)
        self._workspaces.pop(agent_id, None)

    async def close(self, *, destroy: bool = False) -> None:
        await self.scheduler.aclose()
        for agent_id in self.manager.active_agents():
            await self.manager.release(agent_id, destroy=destroy)
        self._workspaces.clear()
        self.records.close()
        self.store.close()
        logger.info("Workspace service %s closed", self.config.name)
