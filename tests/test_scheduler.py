"""Unit tests for scheduler.py - Debounced sync scheduling."""

import asyncio
import threading

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from config import SyncConfig
from reconciler import ReconcileResult
from scheduler import SyncScheduler, SyncState


def fast_config(**overrides):
    values = dict(debounce_delay=0.05, retry_delay=0.05, resync_interval=0.0)
    values.update(overrides)
    return SyncConfig(**values)


async def wait_for_passes(scheduler, count, timeout=2.0):
    async def poll():
        while scheduler.pass_count < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestSyncSchedulerConfig:
    """Tests for scheduler construction."""

    def test_default_values(self):
        scheduler = SyncScheduler(AsyncMock())
        assert scheduler.debounce_delay == 5.0
        assert scheduler.retry_delay == 30.0
        assert scheduler.resync_interval == 0.0
        assert scheduler.state is SyncState.IDLE
        assert scheduler.pass_count == 0

    def test_custom_values(self):
        scheduler = SyncScheduler(
            AsyncMock(), SyncConfig(debounce_delay=1, retry_delay=2, resync_interval=3)
        )
        assert scheduler.debounce_delay == 1
        assert scheduler.retry_delay == 2
        assert scheduler.resync_interval == 3


@pytest.mark.asyncio
class TestSyncSchedulerAsync:
    """Tests for the scheduling loop."""

    @pytest_asyncio.fixture
    async def run_scheduler(self):
        started = []

        async def run(scheduler):
            task = asyncio.create_task(scheduler.start())
            started.append((scheduler, task))
            await asyncio.sleep(0)
            return task

        yield run

        for scheduler, task in started:
            await scheduler.stop()
            await asyncio.wait_for(task, 2.0)

    async def test_burst_is_coalesced_into_one_pass(self, run_scheduler, successful_sync):
        scheduler = SyncScheduler(successful_sync, fast_config())
        await run_scheduler(scheduler)

        for i in range(10):
            scheduler.notify(f"ns/pod-{i}")
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)
        assert scheduler.state is SyncState.PENDING

        await wait_for_passes(scheduler, 1)
        await asyncio.sleep(0.15)

        assert successful_sync.await_count == 1
        assert scheduler.state is SyncState.IDLE

    async def test_no_pass_without_notification(self, run_scheduler, successful_sync):
        scheduler = SyncScheduler(successful_sync, fast_config())
        await run_scheduler(scheduler)

        await asyncio.sleep(0.15)

        successful_sync.assert_not_awaited()

    async def test_notification_during_pass_schedules_follow_up(self, run_scheduler):
        release = asyncio.Event()
        scheduler = None

        async def sync():
            if scheduler.pass_count == 1:
                scheduler.notify("ns/late")
                await release.wait()
            return ReconcileResult(success=True)

        scheduler = SyncScheduler(sync, fast_config())
        await run_scheduler(scheduler)

        scheduler.notify("ns/first")
        await wait_for_passes(scheduler, 1)
        assert scheduler.state is SyncState.RUNNING
        release.set()

        await wait_for_passes(scheduler, 2)
        await asyncio.sleep(0.15)
        assert scheduler.pass_count == 2
        assert scheduler.state is SyncState.IDLE

    async def test_failed_pass_is_retried(self, run_scheduler):
        sync = AsyncMock(
            side_effect=[
                ReconcileResult(success=False, message="agent down"),
                ReconcileResult(success=True),
            ]
        )
        scheduler = SyncScheduler(sync, fast_config())
        await run_scheduler(scheduler)

        scheduler.notify("ns/pod")
        await wait_for_passes(scheduler, 1)
        await asyncio.sleep(0.01)
        assert scheduler.state is SyncState.BACKOFF

        await wait_for_passes(scheduler, 2)
        await asyncio.sleep(0.15)
        assert sync.await_count == 2
        assert scheduler.state is SyncState.IDLE
        assert scheduler.last_result.success is True

    async def test_raising_pass_is_retried(self, run_scheduler):
        sync = AsyncMock(
            side_effect=[RuntimeError("unexpected"), ReconcileResult(success=True)]
        )
        scheduler = SyncScheduler(sync, fast_config())
        await run_scheduler(scheduler)

        scheduler.notify("ns/pod")
        await wait_for_passes(scheduler, 2)

        assert sync.await_count == 2

    async def test_notification_during_backoff_rearms_debounce(self, run_scheduler):
        sync = AsyncMock(
            side_effect=[
                ReconcileResult(success=False),
                ReconcileResult(success=True),
            ]
        )
        scheduler = SyncScheduler(sync, fast_config(retry_delay=10.0))
        await run_scheduler(scheduler)

        scheduler.notify("ns/pod")
        await wait_for_passes(scheduler, 1)
        await asyncio.sleep(0.01)
        assert scheduler.state is SyncState.BACKOFF

        scheduler.notify("ns/other")
        await asyncio.sleep(0.01)
        assert scheduler.state is SyncState.PENDING

        await wait_for_passes(scheduler, 2)
        assert sync.await_count == 2

    async def test_resync_interval(self, run_scheduler, successful_sync):
        scheduler = SyncScheduler(successful_sync, fast_config(resync_interval=0.05))
        await run_scheduler(scheduler)

        await wait_for_passes(scheduler, 2)

        assert successful_sync.await_count >= 2

    async def test_notify_from_other_thread(self, run_scheduler, successful_sync):
        scheduler = SyncScheduler(successful_sync, fast_config())
        await run_scheduler(scheduler)

        thread = threading.Thread(target=scheduler.notify, args=("ns/pod",))
        thread.start()
        thread.join()

        await wait_for_passes(scheduler, 1)
        assert successful_sync.await_count == 1

    async def test_stop_ends_loop(self, successful_sync):
        scheduler = SyncScheduler(successful_sync, fast_config())
        task = asyncio.create_task(scheduler.start())
        await asyncio.sleep(0)
        assert scheduler.running is True

        await scheduler.stop()
        await asyncio.wait_for(task, 1.0)

        assert scheduler.running is False
