import asyncio
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.base import STATE_PAUSED, STATE_RUNNING

from chatsync.realtime.monitor import DEGRADED, DISCONNECTED
from chatsync.services.notifications import RecordingNotifier
from chatsync.services.results import INTERNAL_ERROR, OperationResult
from chatsync.services.staleness import StaleSessionReaper, is_stale

from helpers import make_backend

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def test_only_old_waiting_sessions_are_stale():
    assert is_stale("waiting", T0, T0 + timedelta(minutes=10, seconds=1))
    assert not is_stale("waiting", T0, T0 + timedelta(minutes=10))
    assert not is_stale("active", T0, T0 + timedelta(days=1))
    assert not is_stale("ended", T0, T0 + timedelta(days=1))
    assert is_stale("waiting", T0, T0 + timedelta(minutes=3), threshold=timedelta(minutes=2))


def test_reaper_ends_stale_sessions_and_notifies(db_url, clock):
    notifier = RecordingNotifier()

    async def scenario():
        backend = await make_backend(db_url, clock)
        reaper = StaleSessionReaper(backend.operations, notifier=notifier)
        try:
            stale = (await backend.operations.start_or_reuse_session("u1")).data
            clock.advance(minutes=12)
            await backend.operations.start_or_reuse_session("u2")
            first = await reaper.run_once()
            second = await reaper.run_once()
            row = await backend.operations.get_session(stale["id"])
        finally:
            await backend.close()
        return stale, first, second, row

    stale, first, second, row = asyncio.run(scenario())
    assert (first, second) == (1, 0)
    assert row["status"] == "ended"
    assert [data["session_id"] for _, _, data in notifier.sent] == [stale["id"]]


class BrokenOperations:
    async def reap_stale_sessions(self):
        return OperationResult.fail(INTERNAL_ERROR, "disk full")


def test_reaper_survives_backend_failure():
    reaper = StaleSessionReaper(BrokenOperations())
    assert asyncio.run(reaper.run_once()) == 0
    assert not reaper._running


def test_overlapping_runs_are_skipped():
    class SlowOperations:
        calls = 0

        async def reap_stale_sessions(self):
            SlowOperations.calls += 1
            await asyncio.sleep(0.05)
            return OperationResult.ok({"ended": []})

    async def scenario():
        reaper = StaleSessionReaper(SlowOperations())
        return await asyncio.gather(reaper.run_once(), reaper.run_once())

    assert asyncio.run(scenario()) == [0, 0]
    assert SlowOperations.calls == 1


def test_reaper_pauses_while_database_is_unreachable(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        reaper = StaleSessionReaper(backend.operations)
        try:
            stale = (await backend.operations.start_or_reuse_session("u1")).data
            clock.advance(minutes=12)

            reaper.start()
            reaper.on_connection_change(DISCONNECTED)
            scheduler_paused = reaper.scheduler.state == STATE_PAUSED
            while_down = await reaper.run_once()
            row = await backend.operations.get_session(stale["id"])

            reaper.on_connection_change(DEGRADED)
            scheduler_resumed = reaper.scheduler.state == STATE_RUNNING
            after = await reaper.run_once()
        finally:
            reaper.stop()
            await backend.close()
        return scheduler_paused, while_down, row["status"], scheduler_resumed, after, reaper.paused

    paused, while_down, status, resumed, after, still_paused = asyncio.run(scenario())
    assert paused and resumed
    assert (while_down, status) == (0, "waiting")
    assert after == 1
    assert not still_paused
