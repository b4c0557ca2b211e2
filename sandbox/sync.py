"""Background sync from live environments into the durable store.

A live environment is briefly the more authoritative copy after a command
creates or changes files. The scheduler captures it back into the store:

- periodically (``start``), every ``interval`` seconds after an immediate first run
- after a quiet period (``trigger``), collapsing bursts of writes into one run
- on demand (``sync_now``)

A capture only speaks for what it can see. Store records outside the walk
(outside ``workspace_root``, hidden, excluded) and records the environment
never received (a failed restore or mirror) are kept as stored; any other
record missing from the capture was deleted in the environment.

At most one run per agent is in flight. A request that arrives during a run
queues exactly one follow-up run, which the requester also waits for.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass

from core.filesystem.glob import GlobMatcher, matches_any
from core.filesystem.paths import dir_prefix, is_under
from sandbox.errors import EnvironmentGoneError
from sandbox.manager import EnvironmentHandle, EnvironmentManager
from storage.file_store import DurableFileStore
from storage.models import BackupSnapshot

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@dataclass
class SyncReport:
    agent_id: str
    file_count: int
    total_size: int
    # Store records written while the capture ran; these win over captured content.
    preserved: int = 0
    # Store records the capture could not see (outside the walk, or unsynced); kept as stored.
    retained: int = 0
    saved: bool = True


@dataclass
class SyncStatus:
    scheduler_active: bool
    pending: bool
    in_flight: bool
    backup: BackupSnapshot | None


class BackgroundSyncScheduler:
    def __init__(
        self,
        manager: EnvironmentManager,
        store: DurableFileStore,
        *,
        interval: float = 120.0,
        debounce: float = 30.0,
        exclude: Iterable[str] = (),
    ):
        self.manager = manager
        self.store = store
        self.interval = interval
        self.debounce = debounce
        self._exclude = [GlobMatcher(pattern) for pattern in exclude]
        self._loops: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, asyncio.Task[SyncReport | None]] = {}
        self._followups: set[str] = set()

    # ==================== Service lifecycle ====================

    def start(self, agent_id: str) -> None:
        loop = self._loops.get(agent_id)
        if loop is not None and not loop.done():
            return
        self._loops[agent_id] = asyncio.create_task(self._periodic(agent_id), name=f"sync-loop:{agent_id}")
        logger.info("Background sync started for agent %s (every %ss)", agent_id, self.interval)

    def stop(self, agent_id: str) -> None:
        for tasks in (self._loops, self._timers):
            task = tasks.pop(agent_id, None)
            if task is not None:
                task.cancel()
        self._followups.discard(agent_id)

    def stop_all(self) -> None:
        for agent_id in set(self._loops) | set(self._timers):
            self.stop(agent_id)

    async def aclose(self) -> None:
        """Stop scheduling and wait for runs already in flight."""
        self.stop_all()
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    def is_active(self, agent_id: str) -> bool:
        loop = self._loops.get(agent_id)
        return loop is not None and not loop.done()

    def status(self, agent_id: str) -> SyncStatus:
        return SyncStatus(
            scheduler_active=self.is_active(agent_id),
            pending=agent_id in self._timers or agent_id in self._followups,
            in_flight=agent_id in self._inflight,
            backup=self.store.snapshot_info(agent_id),
        )

    # ==================== Requests ====================

    def trigger(self, agent_id: str) -> None:
        """Debounced sync: restarts the quiet-period timer."""
        timer = self._timers.pop(agent_id, None)
        if timer is not None:
            timer.cancel()
        self._timers[agent_id] = asyncio.create_task(self._debounced(agent_id), name=f"sync-debounce:{agent_id}")

    async def sync_now(self, agent_id: str) -> SyncReport | None:
        """Run a sync, or join the one in flight (queueing one follow-up).

        Returns None when there is no live environment to capture.
        """
        task = self._inflight.get(agent_id)
        if task is None:
            task = asyncio.create_task(self._run(agent_id), name=f"sync:{agent_id}")
            self._inflight[agent_id] = task
            task.add_done_callback(lambda t, a=agent_id: self._finish(a, t))
        else:
            self._followups.add(agent_id)
        return await asyncio.shield(task)

    async def _periodic(self, agent_id: str) -> None:
        while True:
            try:
                await self.sync_now(agent_id)
            except Exception as e:
                logger.error("Periodic sync failed for agent %s: %s", agent_id, e)
            await asyncio.sleep(self.interval)

    async def _debounced(self, agent_id: str) -> None:
        await asyncio.sleep(self.debounce)
        if self._timers.get(agent_id) is asyncio.current_task():
            del self._timers[agent_id]
        try:
            await self.sync_now(agent_id)
        except Exception as e:
            logger.error("Debounced sync failed for agent %s: %s", agent_id, e)

    def _finish(self, agent_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(agent_id) is task:
            del self._inflight[agent_id]
        if not task.cancelled():
            task.exception()

    # ==================== Capture ====================

    async def _run(self, agent_id: str) -> SyncReport | None:
        try:
            while True:
                report = await self._perform(agent_id)
                if agent_id not in self._followups:
                    return report
                self._followups.discard(agent_id)
        finally:
            self._followups.discard(agent_id)

    async def _perform(self, agent_id: str) -> SyncReport | None:
        handle = self.manager.get_active(agent_id)
        if handle is None:
            logger.debug("No live environment for agent %s, nothing to sync", agent_id)
            return None

        started = time.time()
        try:
            captured = await asyncio.to_thread(self._capture, handle)
        except EnvironmentGoneError as e:
            logger.warning("Environment %s gone during sync for agent %s: %s", handle.external_id, agent_id, e)
            self.manager.mark_stale(agent_id, handle)
            return None

        if not captured:
            # A fresh, empty environment must never wipe the backup.
            logger.info("Capture for agent %s returned no files, keeping existing backup", agent_id)
            return SyncReport(agent_id=agent_id, file_count=0, total_size=0, saved=False)

        # No await between reading the store and replacing it: writes made
        # through the facade cannot interleave.
        root = self.manager.provider.workspace_root
        unsynced = self.manager.unsynced_paths(agent_id)
        files = dict(captured)
        preserved = retained = 0
        for record in self.store.list_all(agent_id):
            if record.updated_at >= started:
                files[record.path] = record.content
                preserved += 1
            elif record.path in unsynced or not self._visible(record.path, root):
                # The capture could not have seen this content; absence proves nothing.
                files[record.path] = record.content
                retained += 1
        count = self.store.bulk_replace(agent_id, [{"path": p, "content": c} for p, c in files.items()])
        total = sum(len(c) for c in files.values())
        logger.info(
            "Saved %d files (%s) for agent %s, %d kept from store",
            count,
            format_bytes(total),
            agent_id,
            preserved + retained,
        )
        return SyncReport(
            agent_id=agent_id,
            file_count=count,
            total_size=total,
            preserved=preserved,
            retained=retained,
        )

    def _skipped(self, name: str, path: str, is_dir: bool, root: str) -> bool:
        if name.startswith("."):
            return True
        if matches_any(path, self._exclude, root):
            return True
        # Directory excludes like "**/node_modules/**" match the dir's contents.
        return is_dir and matches_any(path + "/", self._exclude, root)

    def _visible(self, path: str, root: str) -> bool:
        """Whether a capture from *root* walks down to *path*."""
        if not is_under(path, root):
            return False
        current = root
        parts = path[len(dir_prefix(root)) :].split("/")
        for depth, name in enumerate(parts, start=1):
            current = dir_prefix(current) + name
            if self._skipped(name, current, depth < len(parts), root):
                return False
        return True

    def _capture(self, handle: EnvironmentHandle) -> list[tuple[str, str]]:
        """Walk the environment's workspace. Hidden entries and excludes are skipped."""
        provider = self.manager.provider
        root = provider.workspace_root
        files: list[tuple[str, str]] = []
        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                entries = provider.list_dir(handle.connection, directory)
            except EnvironmentGoneError:
                raise
            except Exception as e:
                if directory == root:
                    raise
                logger.warning("Skipping unreadable directory %s: %s", directory, e)
                continue
            for entry in entries:
                if self._skipped(entry.name, entry.path, entry.is_dir, root):
                    continue
                if entry.is_dir:
                    pending.append(entry.path)
                    continue
                try:
                    files.append((entry.path, provider.read_file(handle.connection, entry.path)))
                except EnvironmentGoneError:
                    raise
                except Exception as e:
                    logger.warning("Skipping unreadable file %s: %s", entry.path, e)
        return files
