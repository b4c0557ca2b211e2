"""Tests for EnvironmentManager acquisition, staleness and restore."""

import asyncio

import pytest

from sandbox.errors import EnvironmentGoneError, EnvironmentUnavailableError
from sandbox.lifecycle import (
    EnvironmentState,
    assert_environment_transition,
)
from sandbox.manager import EnvironmentManager
from storage import AgentEnvironmentStore
from storage.models import FileRecord
from tests.fakes.provider import FakeProvider

AGENT = "agent-1"


def _files(*pairs):
    return [FileRecord(agent_id=AGENT, path=p, content=c) for p, c in pairs]


@pytest.fixture
def records():
    r = AgentEnvironmentStore(":memory:")
    yield r
    r.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def manager(provider, records):
    return EnvironmentManager(provider, records)


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_acquires_create_once(self, records):
        provider = FakeProvider(create_delay=0.05)
        manager = EnvironmentManager(provider, records)

        first, second = await asyncio.gather(manager.acquire(AGENT), manager.acquire(AGENT))

        assert provider.create_calls == 1
        assert first is second

    @pytest.mark.asyncio
    async def test_many_concurrent_acquires(self, records):
        provider = FakeProvider(create_delay=0.02)
        manager = EnvironmentManager(provider, records)

        handles = await asyncio.gather(*(manager.acquire(AGENT) for _ in range(10)))

        assert provider.create_calls == 1
        assert len({id(h) for h in handles}) == 1

    @pytest.mark.asyncio
    async def test_agents_are_independent(self, manager, provider):
        a, b = await asyncio.gather(manager.acquire("a"), manager.acquire("b"))
        assert provider.create_calls == 2
        assert a.external_id != b.external_id

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_creation(self, records):
        provider = FakeProvider(create_delay=0.05)
        manager = EnvironmentManager(provider, records)

        waiter = asyncio.create_task(manager.acquire(AGENT))
        await asyncio.sleep(0)
        other = asyncio.create_task(manager.acquire(AGENT))
        await asyncio.sleep(0.01)
        waiter.cancel()

        handle = await other
        assert handle.external_id == "fake-1"
        assert manager.state(AGENT) == EnvironmentState.ACTIVE
        assert provider.create_calls == 1

    @pytest.mark.asyncio
    async def test_failed_creation_is_reported_to_all_waiters(self, manager, provider):
        provider.create_error = EnvironmentUnavailableError("no credentials")

        results = await asyncio.gather(manager.acquire(AGENT), manager.acquire(AGENT), return_exceptions=True)

        assert all(isinstance(r, EnvironmentUnavailableError) for r in results)
        assert manager.state(AGENT) == EnvironmentState.ABSENT
        assert manager.get_active(AGENT) is None

        provider.create_error = None
        handle = await manager.acquire(AGENT)
        assert handle.external_id == "fake-1"


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnects_to_remembered_environment(self, provider, records):
        first = EnvironmentManager(provider, records)
        handle = await first.acquire(AGENT, _files(("/workspace/a", "1")))
        assert records.get(AGENT) == handle.external_id

        # A new process with the same record store.
        second = EnvironmentManager(provider, records)
        again = await second.acquire(AGENT, _files(("/workspace/a", "1")))

        assert again.external_id == handle.external_id
        assert again.reconnected is True
        assert again.restore_report is None
        assert provider.create_calls == 1
        assert provider.connect_calls == 1

    @pytest.mark.asyncio
    async def test_restore_on_reconnect(self, provider, records):
        handle = await EnvironmentManager(provider, records).acquire(AGENT)
        manager = EnvironmentManager(provider, records, restore_on_reconnect=True)

        again = await manager.acquire(AGENT, _files(("/workspace/a", "1")))

        assert again.reconnected is True
        assert again.restore_report.restored == 1
        assert provider.environments[handle.external_id].files == {"/workspace/a": "1"}

    @pytest.mark.asyncio
    async def test_gone_remembered_environment_falls_back_to_create(self, provider, records):
        old = await EnvironmentManager(provider, records).acquire(AGENT)
        provider.evict(old.external_id)

        manager = EnvironmentManager(provider, records)
        handle = await manager.acquire(AGENT, _files(("/workspace/a", "1")))

        assert handle.external_id != old.external_id
        assert handle.reconnected is False
        assert records.get(AGENT) == handle.external_id
        assert provider.create_calls == 2

    @pytest.mark.asyncio
    async def test_force_new_skips_reconnect(self, manager, provider, records):
        old = await manager.acquire(AGENT)
        handle = await manager.recreate(AGENT)
        assert handle.external_id != old.external_id
        assert provider.connect_calls == 0
        assert records.get(AGENT) == handle.external_id


class TestStaleness:
    @pytest.mark.asyncio
    async def test_mark_stale_drops_handle_and_record(self, manager, records):
        handle = await manager.acquire(AGENT)

        assert manager.mark_stale(AGENT, handle) is True

        assert handle.stale is True
        assert manager.get_active(AGENT) is None
        assert manager.state(AGENT) == EnvironmentState.STALE
        assert records.get(AGENT) is None

    @pytest.mark.asyncio
    async def test_mark_stale_with_replaced_handle_is_noop(self, manager):
        old = await manager.acquire(AGENT)
        manager.mark_stale(AGENT, old)
        new = await manager.acquire(AGENT)

        assert manager.mark_stale(AGENT, old) is False
        assert manager.get_active(AGENT) is new

    @pytest.mark.asyncio
    async def test_mark_stale_without_forget_keeps_record(self, manager, records):
        handle = await manager.acquire(AGENT)
        manager.mark_stale(AGENT, handle, forget=False)
        assert records.get(AGENT) == handle.external_id

    @pytest.mark.asyncio
    async def test_state_cycle(self, manager):
        assert manager.state(AGENT) == EnvironmentState.ABSENT
        handle = await manager.acquire(AGENT)
        assert manager.state(AGENT) == EnvironmentState.ACTIVE
        manager.mark_stale(AGENT, handle)
        assert manager.state(AGENT) == EnvironmentState.STALE
        await manager.acquire(AGENT)
        assert manager.state(AGENT) == EnvironmentState.ACTIVE
        await manager.release(AGENT)
        assert manager.state(AGENT) == EnvironmentState.ABSENT

    @pytest.mark.asyncio
    async def test_failed_recreation_stays_stale(self, manager, provider):
        handle = await manager.acquire(AGENT)
        manager.mark_stale(AGENT, handle)
        provider.create_error = RuntimeError("quota exceeded")

        with pytest.raises(RuntimeError, match="quota"):
            await manager.acquire(AGENT)
        assert manager.state(AGENT) == EnvironmentState.STALE


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_reproduces_exact_file_set(self, manager, provider):
        files = _files(
            ("/workspace/a.txt", "a"),
            ("/workspace/src/b.py", "b"),
            ("/workspace/src/deep/c.md", "c"),
        )
        old = await manager.acquire(AGENT, files)
        provider.evict(old.external_id)
        manager.mark_stale(AGENT, old)

        handle = await manager.acquire(AGENT, files)

        env = provider.environments[handle.external_id]
        assert env.files == {r.path: r.content for r in files}
        assert handle.restore_report.restored == 3
        assert handle.restore_report.failed == 0

    @pytest.mark.asyncio
    async def test_per_file_failures_are_counted(self, manager, provider):
        provider.fail_writes.add("/workspace/locked")
        files = _files(("/workspace/ok", "1"), ("/workspace/locked", "2"), ("/workspace/ok2", "3"))

        handle = await manager.acquire(AGENT, files)

        report = handle.restore_report
        assert (report.restored, report.failed) == (2, 1)
        assert report.failed_paths == ["/workspace/locked"]
        assert set(provider.environments[handle.external_id].files) == {"/workspace/ok", "/workspace/ok2"}
        assert manager.unsynced_paths(AGENT) == {"/workspace/locked"}

    @pytest.mark.asyncio
    async def test_restore_clears_only_marks_it_covers(self, manager):
        """A write newer than the replayed snapshot stays unsynced."""
        manager.mark_unsynced(AGENT, "/workspace/old", 10.0)
        manager.mark_unsynced(AGENT, "/workspace/newer", 30.0)
        manager.mark_unsynced(AGENT, "/workspace/not-in-snapshot", 30.0)
        files = [
            FileRecord(agent_id=AGENT, path="/workspace/old", content="x", updated_at=10.0),
            FileRecord(agent_id=AGENT, path="/workspace/newer", content="y", updated_at=20.0),
        ]

        await manager.acquire(AGENT, files)

        assert manager.unsynced_paths(AGENT) == {"/workspace/newer", "/workspace/not-in-snapshot"}

    def test_mark_synced_ignores_older_deliveries(self, manager):
        manager.mark_unsynced(AGENT, "/workspace/a", 20.0)
        manager.mark_synced(AGENT, "/workspace/a", 10.0)
        assert manager.unsynced_paths(AGENT) == {"/workspace/a"}
        manager.mark_synced(AGENT, "/workspace/a", 20.0)
        assert manager.unsynced_paths(AGENT) == frozenset()


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_keeps_environment_for_reconnect(self, manager, provider, records):
        handle = await manager.acquire(AGENT)
        assert await manager.release(AGENT) is True
        assert manager.get_active(AGENT) is None
        assert records.get(AGENT) == handle.external_id
        assert provider.destroyed == []

    @pytest.mark.asyncio
    async def test_release_destroy(self, manager, provider, records):
        handle = await manager.acquire(AGENT)
        await manager.release(AGENT, destroy=True)
        assert provider.destroyed == [handle.external_id]
        assert records.get(AGENT) is None

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, manager):
        await manager.acquire("a")
        await manager.acquire("b")
        await manager.close()
        assert manager.active_agents() == []


class TestLifecycleStates:
    def test_rejects_absent_to_active(self):
        with pytest.raises(RuntimeError, match="Illegal environment transition"):
            assert_environment_transition(EnvironmentState.ABSENT, EnvironmentState.ACTIVE, reason="test")

    def test_rejects_stale_to_connecting(self):
        with pytest.raises(RuntimeError, match="Illegal environment transition"):
            assert_environment_transition(EnvironmentState.STALE, EnvironmentState.CONNECTING, reason="test")

    def test_allows_recreate_cycle(self):
        assert_environment_transition(EnvironmentState.STALE, EnvironmentState.RECREATING, reason="test")
        assert_environment_transition(EnvironmentState.RECREATING, EnvironmentState.ACTIVE, reason="test")
        assert_environment_transition(None, EnvironmentState.CONNECTING, reason="test")


class TestGoneError:
    def test_carries_environment_id(self):
        error = EnvironmentGoneError("paused sandbox", environment_id="sb-1")
        assert error.environment_id == "sb-1"
