"""Environment lifecycle manager.

Owns at most one live environment handle per agent:

    acquire() → [reconnect to remembered ID | create] → restore → Active
    gone signal → mark_stale() → next acquire() recreates and restores

The agent → handle registry is the only shared mutable structure. Concurrent
acquire() calls for one agent share a single in-flight establishment task, so
they can never create two environments.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sandbox.errors import EnvironmentGoneError
from sandbox.lifecycle import EnvironmentState, assert_environment_transition
from sandbox.provider import EnvironmentProvider, ProviderSession
from storage.agent_store import AgentEnvironmentStore
from storage.models import FileRecord

logger = logging.getLogger(__name__)


@dataclass
class RestoreReport:
    restored: int = 0
    failed: int = 0
    failed_paths: list[str] = field(default_factory=list)


@dataclass(eq=False)
class EnvironmentHandle:
    """A live environment. Replaced, never repaired, once it goes stale."""

    agent_id: str
    external_id: str
    connection: Any
    created_at: float
    reconnected: bool = False
    stale: bool = False
    restore_report: RestoreReport | None = None


class EnvironmentManager:
    def __init__(
        self,
        provider: EnvironmentProvider,
        records: AgentEnvironmentStore,
        *,
        restore_on_reconnect: bool = False,
    ):
        self.provider = provider
        self.records = records
        self.restore_on_reconnect = restore_on_reconnect
        self._handles: dict[str, EnvironmentHandle] = {}
        self._states: dict[str, EnvironmentState] = {}
        self._inflight: dict[str, asyncio.Task[EnvironmentHandle]] = {}
        # Store paths the agent's environment is known to lack or hold stale.
        self._unsynced: dict[str, dict[str, float]] = {}

    # ==================== Registry ====================

    def state(self, agent_id: str) -> EnvironmentState:
        return self._states.get(agent_id, EnvironmentState.ABSENT)

    def get_active(self, agent_id: str) -> EnvironmentHandle | None:
        """Return the live handle without ever creating one."""
        handle = self._handles.get(agent_id)
        if handle is None or handle.stale:
            return None
        return handle

    def active_agents(self) -> list[str]:
        return sorted(agent_id for agent_id, h in self._handles.items() if not h.stale)

    def _transition(self, agent_id: str, target: EnvironmentState, reason: str) -> None:
        assert_environment_transition(self.state(agent_id), target, reason=reason)
        if target == EnvironmentState.ABSENT:
            self._states.pop(agent_id, None)
        else:
            self._states[agent_id] = target

    def mark_stale(self, agent_id: str, handle: EnvironmentHandle | None = None, *, forget: bool = True) -> bool:
        """Drop the agent's handle after a gone signal.

        Only the handle the caller observed failing is dropped; if it was
        already replaced this is a no-op. With ``forget`` the remembered
        external ID is cleared too so the next acquire creates a new one.
        """
        current = self._handles.get(agent_id)
        if current is None or (handle is not None and current is not handle):
            return False
        current.stale = True
        del self._handles[agent_id]
        self._transition(agent_id, EnvironmentState.STALE, "gone signal")
        if forget and self.records.get(agent_id) == current.external_id:
            self.records.clear(agent_id)
        logger.info("Environment %s for agent %s marked stale", current.external_id, agent_id)
        return True

    # ==================== Unsynced paths ====================

    def mark_unsynced(self, agent_id: str, path: str, written_at: float) -> None:
        """Record a store write (at ``written_at``) the environment did not receive."""
        marks = self._unsynced.setdefault(agent_id, {})
        marks[path] = max(written_at, marks.get(path, written_at))

    def mark_synced(self, agent_id: str, path: str, written_at: float) -> None:
        """The environment received the store content written at ``written_at``."""
        marks = self._unsynced.get(agent_id)
        if marks is None or marks.get(path, written_at + 1) > written_at:
            return
        del marks[path]
        if not marks:
            del self._unsynced[agent_id]

    def unsynced_paths(self, agent_id: str) -> frozenset[str]:
        """Store paths whose stored content must not be replaced by a capture."""
        return frozenset(self._unsynced.get(agent_id, ()))

    # ==================== Acquisition ====================

    async def acquire(
        self,
        agent_id: str,
        restore_files: Sequence[FileRecord] | None = None,
        *,
        force_new: bool = False,
    ) -> EnvironmentHandle:
        """Return the agent's live handle, establishing one if needed.

        ``restore_files`` is replayed into a newly created environment.
        ``force_new`` skips reconnection to the remembered ID.
        """
        handle = self.get_active(agent_id)
        if handle is not None:
            return handle

        task = self._inflight.get(agent_id)
        if task is None:
            task = asyncio.create_task(self._establish(agent_id, restore_files, force_new))
            self._inflight[agent_id] = task
            task.add_done_callback(lambda t, a=agent_id: self._finish_inflight(a, t))
        # Waiters that get cancelled must not cancel the shared establishment.
        return await asyncio.shield(task)

    async def recreate(self, agent_id: str, restore_files: Sequence[FileRecord] | None = None) -> EnvironmentHandle:
        self.mark_stale(agent_id)
        return await self.acquire(agent_id, restore_files, force_new=True)

    def _finish_inflight(self, agent_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(agent_id) is task:
            del self._inflight[agent_id]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter already received it.
            task.exception()

    async def _establish(
        self,
        agent_id: str,
        restore_files: Sequence[FileRecord] | None,
        force_new: bool,
    ) -> EnvironmentHandle:
        previous = self.state(agent_id)
        replacing = previous in (EnvironmentState.STALE, EnvironmentState.ACTIVE)
        self._transition(
            agent_id,
            EnvironmentState.RECREATING if replacing else EnvironmentState.CONNECTING,
            "acquire",
        )
        try:
            session, reconnected = await self._connect_or_create(agent_id, force_new)
            handle = EnvironmentHandle(
                agent_id=agent_id,
                external_id=session.external_id,
                connection=session.connection,
                created_at=time.time(),
                reconnected=reconnected,
            )
            if restore_files and (not reconnected or self.restore_on_reconnect):
                handle.restore_report = await self._restore(handle, restore_files)
                failed = set(handle.restore_report.failed_paths)
                for record in restore_files:
                    if record.path in failed:
                        self.mark_unsynced(agent_id, record.path, record.updated_at)
                    else:
                        self.mark_synced(agent_id, record.path, record.updated_at)
        except BaseException:
            self._transition(
                agent_id,
                EnvironmentState.STALE if replacing else EnvironmentState.ABSENT,
                "establish failed",
            )
            raise

        self._handles[agent_id] = handle
        self._transition(agent_id, EnvironmentState.ACTIVE, "established")
        return handle

    async def _connect_or_create(self, agent_id: str, force_new: bool) -> tuple[ProviderSession, bool]:
        remembered = None if force_new else self.records.get(agent_id)
        if remembered:
            logger.info("Reconnecting to environment %s for agent %s", remembered, agent_id)
            try:
                session = await asyncio.to_thread(self.provider.connect, remembered)
                return session, True
            except EnvironmentGoneError as e:
                logger.info("Environment %s for agent %s is gone (%s), creating a new one", remembered, agent_id, e)
                self.records.clear(agent_id)
        elif force_new:
            self.records.clear(agent_id)

        logger.info("Creating environment for agent %s", agent_id)
        session = await asyncio.to_thread(self.provider.create)
        self.records.set(agent_id, session.external_id, self.provider.name)
        logger.info("Created environment %s for agent %s", session.external_id, agent_id)
        return session, False

    async def _restore(self, handle: EnvironmentHandle, files: Sequence[FileRecord]) -> RestoreReport:
        """Replay files into the environment. Per-file failures are counted, not raised."""
        logger.info("Restoring %d files into %s", len(files), handle.external_id)
        report = RestoreReport()
        made_dirs: set[str] = {"/", self.provider.workspace_root}
        for record in files:
            try:
                parent = posixpath.dirname(record.path)
                if parent and parent not in made_dirs:
                    await asyncio.to_thread(self.provider.make_dirs, handle.connection, parent)
                    made_dirs.add(parent)
                await asyncio.to_thread(self.provider.write_file, handle.connection, record.path, record.content)
                report.restored += 1
            except Exception as e:
                logger.warning("Failed to restore file %s: %s", record.path, e)
                report.failed += 1
                report.failed_paths.append(record.path)
        logger.info("Restore complete: %d succeeded, %d failed", report.restored, report.failed)
        return report

    # ==================== Teardown ====================

    async def release(self, agent_id: str, *, destroy: bool = False) -> bool:
        """Drop the agent's handle; with ``destroy`` also kill the environment."""
        task = self._inflight.get(agent_id)
        if task is not None:
            await asyncio.gather(asyncio.shield(task), return_exceptions=True)

        handle = self._handles.pop(agent_id, None)
        if self.state(agent_id) != EnvironmentState.ABSENT:
            self._transition(agent_id, EnvironmentState.ABSENT, "release")
        if handle is not None:
            handle.stale = True

        if destroy:
            external_id = handle.external_id if handle else self.records.get(agent_id)
            self.records.clear(agent_id)
            if external_id:
                await asyncio.to_thread(self.provider.destroy, external_id)
                logger.info("Destroyed environment %s for agent %s", external_id, agent_id)
        return handle is not None

    async def close(self) -> None:
        for agent_id in list(self._handles):
            await self.release(agent_id)
