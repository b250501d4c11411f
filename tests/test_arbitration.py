import asyncio

from chatsync.client.arbitration import EVICTION_NOTICE, TOKEN_KEY, ContextStorage, SingleSessionGuard
from chatsync.client.session_manager import NO_SESSION, ChatSessionManager
from chatsync.repositories.active_session_repo import ActiveSessionRepository
from chatsync.realtime.transport import RealtimeTransport
from chatsync.services.notifications import RecordingNotifier

from helpers import make_backend


class SignOut:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


def test_newer_login_evicts_older_context(db_url, clock):
    notifier = RecordingNotifier()
    sign_out_a, sign_out_b = SignOut(), SignOut()

    async def scenario():
        backend = await make_backend(db_url, clock)
        manager = ChatSessionManager("u1", backend.client(), RealtimeTransport(backend.feed), clock=clock)
        guard_a = SingleSessionGuard(
            backend.active_sessions, ContextStorage(), sign_out_a,
            device_info="tab A", session_manager=manager, notifier=notifier,
        )
        guard_b = SingleSessionGuard(backend.active_sessions, ContextStorage(), sign_out_b, device_info="tab B")
        try:
            await manager.start()
            await guard_a.register("u1")
            assert await guard_a.check()

            await guard_b.register("u1")
            a_alive = await guard_a.check()
            b_alive = await guard_b.check()
            return a_alive, b_alive, guard_a.is_signed_in, guard_b.is_signed_in, manager.state
        finally:
            await manager.close()
            await backend.close()

    a_alive, b_alive, a_in, b_in, state = asyncio.run(scenario())
    assert (a_alive, b_alive) == (False, True)
    assert (a_in, b_in) == (False, True)
    assert state == NO_SESSION
    assert sign_out_a.calls == 1
    assert sign_out_b.calls == 0
    assert notifier.sent[0][1] == EVICTION_NOTICE


def test_missing_record_does_not_evict(db_url, clock):
    sign_out = SignOut()

    async def scenario():
        backend = await make_backend(db_url, clock)
        storage = ContextStorage()
        guard = SingleSessionGuard(backend.active_sessions, storage, sign_out)
        try:
            await guard.register("u1")
            token = storage.get(TOKEN_KEY)
            await backend.active_sessions.clear("u1", token)
            return await guard.check(), token == guard.token
        finally:
            await backend.close()

    alive, stable = asyncio.run(scenario())
    assert alive
    assert stable
    assert sign_out.calls == 0


def test_sign_out_clears_only_own_record(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        old = SingleSessionGuard(backend.active_sessions, ContextStorage(), lambda: None)
        new = SingleSessionGuard(backend.active_sessions, ContextStorage(), lambda: None)
        try:
            await old.register("u1")
            await new.register("u1")
            await old.sign_out_with_cleanup()
            after_old = (await backend.active_sessions.current_token("u1")).data
            await new.sign_out_with_cleanup()
            after_new = (await backend.active_sessions.current_token("u1")).data
            return after_old, new.token, after_new, old.is_signed_in
        finally:
            await backend.close()

    after_old, new_token, after_new, old_signed_in = asyncio.run(scenario())
    assert after_old == new_token
    assert after_new is None
    assert not old_signed_in


def test_device_info_is_truncated(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        try:
            result = await backend.active_sessions.register("u1", "t1", "x" * 500)
            bad = await backend.active_sessions.register("", "t1")
            async with backend.session_maker() as session:
                record = await ActiveSessionRepository(session).get("u1")
                return result.success, bad.success, len(record.device_info)
        finally:
            await backend.close()

    assert asyncio.run(scenario()) == (True, False, 200)


def test_scheduled_polling_starts_and_stops(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        guard = SingleSessionGuard(backend.active_sessions, ContextStorage(), lambda: None, interval_sec=30)
        try:
            await guard.start("u1")
            running = guard.scheduler.running
            guard.stop()
            return running, guard.scheduler
        finally:
            await backend.close()

    assert asyncio.run(scenario()) == (True, None)
