"""Tests for reachability tracking."""
import asyncio

import pytest

from assessment_sync.services.connection_monitor import ConnectionMonitor
from assessment_sync.services.remote_client import RemoteAssessmentClient


class TestConnectionMonitor:
    @pytest.mark.asyncio
    async def test_initial_state_is_unreachable(self, monitor):
        assert monitor.is_reachable() is False
        assert monitor.state.last_checked_at is None

    @pytest.mark.asyncio
    async def test_successful_probe(self, monitor):
        assert await monitor.check_now() is True
        assert monitor.is_reachable() is True
        assert monitor.state.last_checked_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["down", "timeout", "500", "html", "unhealthy", "badgzip"])
    async def test_failed_probes(self, monitor, remote, mode):
        remote.health_mode = mode
        assert await monitor.check_now() is False
        assert monitor.is_reachable() is False

    @pytest.mark.asyncio
    async def test_listeners_receive_transitions_only(self, monitor, remote):
        seen = []
        monitor.on_change(lambda prev, cur: seen.append((prev.reachable, cur.reachable)))

        await monitor.check_now()  # unreachable -> reachable
        await monitor.check_now()  # no change
        remote.health_mode = "down"
        await monitor.check_now()  # reachable -> unreachable

        assert seen == [(False, True), (True, False)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, monitor):
        seen = []
        unsubscribe = monitor.on_change(lambda prev, cur: seen.append(cur.reachable))
        unsubscribe()
        await monitor.check_now()
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(self, monitor):
        seen = []

        def broken(prev, cur):
            raise RuntimeError("listener bug")

        monitor.on_change(broken)
        monitor.on_change(lambda prev, cur: seen.append(cur.reachable))
        assert await monitor.check_now() is True
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_degraded_after_repeated_failures(self, monitor, remote):
        remote.health_mode = "down"
        for _ in range(2):
            await monitor.check_now()
        assert monitor.state.degraded is False

        await monitor.check_now()
        assert monitor.state.degraded is True
        assert monitor.state.consecutive_failures == 3
        # Degraded mode never reports the service as reachable
        assert monitor.is_reachable() is False

        remote.health_mode = "ok"
        await monitor.check_now()
        assert monitor.state.degraded is False
        assert monitor.state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_concurrent_checks_share_one_probe(self, monitor):
        calls = []
        health = monitor.client.health

        async def counting_health():
            calls.append(1)
            return await health()

        monitor.client.health = counting_health
        results = await asyncio.gather(monitor.check_now(), monitor.check_now())
        assert results == [True, True]
        assert len(calls) == 1

        # A later check probes again
        assert await monitor.check_now() is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_late_caller_gets_result_of_probe_in_flight(self, monitor):
        gate = asyncio.Event()
        health = monitor.client.health

        async def slow_health():
            await gate.wait()
            return await health()

        monitor.client.health = slow_health
        first = asyncio.create_task(monitor.check_now())
        await asyncio.sleep(0)
        second = asyncio.create_task(monitor.check_now())
        await asyncio.sleep(0)
        assert second.done() is False

        gate.set()
        assert await first is True
        assert await second is True


@pytest.mark.asyncio
async def test_unconfigured_remote_is_unreachable():
    monitor = ConnectionMonitor(RemoteAssessmentClient(base_url=""), check_interval=0)
    assert await monitor.check_now() is False


@pytest.mark.asyncio
async def test_start_is_noop_when_interval_disabled(monitor):
    monitor.start()
    assert monitor._task is None
    await monitor.stop()


@pytest.mark.asyncio
async def test_explicit_zero_degraded_threshold_is_kept(client, retry_engine, remote):
    monitor = ConnectionMonitor(client, retry_engine=retry_engine, check_interval=0, degraded_after=0)
    assert monitor.degraded_after == 0
    remote.health_mode = "down"
    await monitor.check_now()
    assert monitor.state.degraded is True
