"""Tests for BackgroundSyncScheduler capture, coalescing and debounce."""

import asyncio
import logging
import time

import pytest

from core.filesystem.operations import FileOperations
from sandbox.lifecycle import EnvironmentState
from sandbox.manager import EnvironmentManager
from sandbox.sync import BackgroundSyncScheduler, format_bytes
from storage import AgentEnvironmentStore, SQLiteFileStore
from tests.fakes.provider import FakeProvider

AGENT = "agent-1"
EXCLUDES = ["**/node_modules/**", "**/__pycache__/**"]


@pytest.fixture
def store():
    s = SQLiteFileStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def manager(provider):
    records = AgentEnvironmentStore(":memory:")
    yield EnvironmentManager(provider, records)
    records.close()


@pytest.fixture
def scheduler(manager, store):
    return BackgroundSyncScheduler(manager, store, interval=0.05, debounce=0.05, exclude=EXCLUDES)


def count_root_listings(provider, delay=0.0):
    """Instrument list_dir; returns a list that grows once per capture."""
    calls = []
    original = provider.list_dir

    def list_dir(connection, path):
        if path == provider.workspace_root:
            calls.append(path)
            if delay:
                time.sleep(delay)
        return original(connection, path)

    provider.list_dir = list_dir
    return calls


class TestCapture:
    @pytest.mark.asyncio
    async def test_no_live_environment(self, scheduler, store, provider):
        store.put(AGENT, "/workspace/a", "x")
        assert await scheduler.sync_now(AGENT) is None
        assert provider.create_calls == 0
        assert store.paths(AGENT) == ["/workspace/a"]

    @pytest.mark.asyncio
    async def test_replaces_store_with_environment_contents(self, scheduler, manager, store, provider):
        store.put(AGENT, "/workspace/deleted-in-env.txt", "old")
        handle = await manager.acquire(AGENT, store.list_all(AGENT))
        env = provider.environments[handle.external_id]
        del env.files["/workspace/deleted-in-env.txt"]
        env.files.update(
            {
                "/workspace/a.txt": "a",
                "/workspace/src/b.py": "b",
                "/workspace/.env": "SECRET=1",
                "/workspace/.git/config": "[core]",
                "/workspace/node_modules/pkg/index.js": "js",
                "/workspace/src/__pycache__/b.pyc": "bytecode",
            }
        )
        await asyncio.sleep(0.01)

        report = await scheduler.sync_now(AGENT)

        assert report.file_count == 2
        assert report.total_size == 2
        assert report.retained == 0
        assert store.paths(AGENT) == ["/workspace/a.txt", "/workspace/src/b.py"]

    @pytest.mark.asyncio
    async def test_keeps_store_files_outside_the_capture(self, scheduler, manager, store, provider):
        """Files the walk never visits are not evidence of deletion."""
        store.put(AGENT, "/root/a.txt", "outside the workspace")
        store.put(AGENT, "/workspace/.env", "SECRET=1")
        store.put(AGENT, "/workspace/.git/config", "[core]")
        store.put(AGENT, "/workspace/node_modules/pkg/index.js", "js")
        store.put(AGENT, "/workspace/main.py", "v1")
        store.put(AGENT, "/workspace/removed.py", "bye")
        handle = await manager.acquire(AGENT, store.list_all(AGENT))
        env = provider.environments[handle.external_id]
        env.files["/workspace/main.py"] = "v2"
        del env.files["/workspace/removed.py"]
        await asyncio.sleep(0.01)

        report = await scheduler.sync_now(AGENT)

        assert report.retained == 4
        assert store.paths(AGENT) == [
            "/root/a.txt",
            "/workspace/.env",
            "/workspace/.git/config",
            "/workspace/main.py",
            "/workspace/node_modules/pkg/index.js",
        ]
        assert store.get(AGENT, "/root/a.txt").content == "outside the workspace"
        assert store.get(AGENT, "/workspace/main.py").content == "v2"

    @pytest.mark.asyncio
    async def test_keeps_files_whose_restore_failed(self, scheduler, manager, store, provider):
        store.put(AGENT, "/workspace/keep.txt", "restored")
        store.put(AGENT, "/workspace/lost.txt", "only in the store")
        provider.fail_writes.add("/workspace/lost.txt")
        handle = await manager.acquire(AGENT, store.list_all(AGENT))
        assert handle.restore_report.failed_paths == ["/workspace/lost.txt"]
        await asyncio.sleep(0.01)

        report = await scheduler.sync_now(AGENT)

        assert report.retained == 1
        assert store.paths(AGENT) == ["/workspace/keep.txt", "/workspace/lost.txt"]
        assert store.get(AGENT, "/workspace/lost.txt").content == "only in the store"

    @pytest.mark.asyncio
    async def test_keeps_writes_whose_mirror_failed(self, scheduler, manager, store, provider):
        ops = FileOperations(AGENT, store, manager, root="/workspace")
        store.put(AGENT, "/workspace/a.txt", "v1")
        handle = await manager.acquire(AGENT, store.list_all(AGENT))
        provider.fail_writes.update({"/workspace/a.txt", "/workspace/b.txt"})

        assert (await ops.write("a.txt", "v2")).mirrored is False
        assert (await ops.write("b.txt", "new")).mirrored is False
        assert provider.environments[handle.external_id].files == {"/workspace/a.txt": "v1"}
        await asyncio.sleep(0.01)

        report = await scheduler.sync_now(AGENT)

        assert report.retained == 2
        assert store.get(AGENT, "/workspace/a.txt").content == "v2"
        assert store.get(AGENT, "/workspace/b.txt").content == "new"

    @pytest.mark.asyncio
    async def test_keeps_writes_made_before_reconnect(self, scheduler, manager, store, provider):
        """Reconnecting without a restore leaves offline writes out of the environment."""
        ops = FileOperations(AGENT, store, manager, root="/workspace")
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a.txt"] = "a"
        await manager.release(AGENT)

        await ops.write("offline.txt", "written while detached")
        again = await manager.acquire(AGENT, store.list_all(AGENT))
        assert again.reconnected is True
        await asyncio.sleep(0.01)

        await scheduler.sync_now(AGENT)

        assert store.paths(AGENT) == ["/workspace/a.txt", "/workspace/offline.txt"]

    @pytest.mark.asyncio
    async def test_empty_capture_keeps_backup(self, scheduler, manager, store):
        store.put(AGENT, "/workspace/a", "precious")
        await manager.acquire(AGENT)

        report = await scheduler.sync_now(AGENT)

        assert report.saved is False
        assert store.get(AGENT, "/workspace/a").content == "precious"

    @pytest.mark.asyncio
    async def test_gone_during_capture_marks_stale(self, scheduler, manager, store, provider):
        store.put(AGENT, "/workspace/a", "kept")
        handle = await manager.acquire(AGENT)
        provider.evict(handle.external_id)

        assert await scheduler.sync_now(AGENT) is None
        assert manager.state(AGENT) == EnvironmentState.STALE
        assert store.get(AGENT, "/workspace/a").content == "kept"

    @pytest.mark.asyncio
    async def test_writes_during_capture_win(self, scheduler, manager, store, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a.txt"] = "captured"
        original = provider.list_dir

        def list_dir(connection, path):
            if path == provider.workspace_root:
                store.put(AGENT, "/workspace/a.txt", "newer")
                store.put(AGENT, "/workspace/new.txt", "fresh")
            return original(connection, path)

        provider.list_dir = list_dir
        report = await scheduler.sync_now(AGENT)

        assert report.preserved == 2
        assert store.get(AGENT, "/workspace/a.txt").content == "newer"
        assert store.get(AGENT, "/workspace/new.txt").content == "fresh"

    @pytest.mark.asyncio
    async def test_root_listing_failure_propagates(self, scheduler, manager, provider):
        await manager.acquire(AGENT)

        def broken(connection, path):
            raise RuntimeError("listing failed")

        provider.list_dir = broken
        with pytest.raises(RuntimeError, match="listing failed"):
            await scheduler.sync_now(AGENT)
        assert manager.state(AGENT) == EnvironmentState.ACTIVE


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_requests_queue_one_followup(self, scheduler, manager, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a"] = "x"
        captures = count_root_listings(provider, delay=0.05)

        reports = await asyncio.gather(*(scheduler.sync_now(AGENT) for _ in range(5)))

        assert len(captures) == 2
        assert all(r is reports[0] for r in reports)

    @pytest.mark.asyncio
    async def test_debounced_triggers_collapse(self, scheduler, manager, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a"] = "x"
        captures = count_root_listings(provider)

        for _ in range(5):
            scheduler.trigger(AGENT)
            await asyncio.sleep(0.01)
        assert scheduler.status(AGENT).pending is True

        await asyncio.sleep(0.15)
        assert len(captures) == 1
        assert scheduler.status(AGENT).pending is False

    @pytest.mark.asyncio
    async def test_debounced_failure_is_logged(self, scheduler, manager, provider, caplog):
        await manager.acquire(AGENT)

        def broken(connection, path):
            raise RuntimeError("listing failed")

        provider.list_dir = broken
        with caplog.at_level(logging.ERROR, logger="sandbox.sync"):
            scheduler.trigger(AGENT)
            await asyncio.sleep(0.15)
        assert "Debounced sync failed" in caplog.text


class TestServiceLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_immediately_then_periodically(self, scheduler, manager, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a"] = "x"
        captures = count_root_listings(provider)

        scheduler.start(AGENT)
        scheduler.start(AGENT)
        await asyncio.sleep(0.01)
        assert len(captures) == 1
        assert scheduler.status(AGENT).scheduler_active is True

        await asyncio.sleep(0.12)
        assert len(captures) >= 2

        scheduler.stop(AGENT)
        await asyncio.sleep(0)
        assert scheduler.status(AGENT).scheduler_active is False

    @pytest.mark.asyncio
    async def test_status_reports_backup(self, scheduler, manager, store, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a"] = "abc"
        await scheduler.sync_now(AGENT)

        status = scheduler.status(AGENT)
        assert status.in_flight is False
        assert status.backup.file_count == 1
        assert status.backup.total_size == 3

    @pytest.mark.asyncio
    async def test_aclose_waits_for_in_flight_run(self, scheduler, manager, store, provider):
        handle = await manager.acquire(AGENT)
        provider.environments[handle.external_id].files["/workspace/a"] = "x"
        count_root_listings(provider, delay=0.05)

        task = asyncio.create_task(scheduler.sync_now(AGENT))
        await asyncio.sleep(0.01)
        assert scheduler.status(AGENT).in_flight is True
        scheduler.start("other")

        await scheduler.aclose()

        assert store.paths(AGENT) == ["/workspace/a"]
        assert scheduler.status("other").scheduler_active is False
        await task


def test_format_bytes():
    assert format_bytes(512) == "512 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_bytes(5 * 1024 * 1024) == "5.0 MB"
