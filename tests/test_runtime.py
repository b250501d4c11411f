import asyncio

from chatsync.client.arbitration import ContextStorage
from chatsync.realtime.monitor import CONNECTED
from chatsync.runtime import build_client, open_backend
from chatsync.services.notifications import RecordingNotifier

from helpers import eventually


def test_two_contexts_share_one_backend(db_url):
    notifier = RecordingNotifier()
    signed_out = []

    async def scenario():
        backend = await open_backend(db_url, notifier=notifier)
        user = build_client(backend, "u1", ContextStorage(), lambda: signed_out.append("u1"))
        support = build_client(backend, "sp1", ContextStorage(), lambda: None, role="specialist")
        try:
            assert await user.monitor.check() == CONNECTED
            await user.guard.register("u1")
            session = await user.manager.start()

            await support.manager.open(session.id)
            await support.manager.send("How can I help?")
            await eventually(lambda: user.manager.state == "active" and len(user.manager.messages) == 1)

            await user.phone_calls.watch(session.id)
            await backend.phone_calls.request_call(session.id, "sp1")
            await eventually(lambda: user.phone_calls.active_request is not None)
            await eventually(lambda: len(user.manager.messages) == 2)

            other_tab = build_client(backend, "u1", ContextStorage(), lambda: None)
            await other_tab.guard.register("u1")
            evicted = not await user.guard.check()
            await other_tab.close()
            return evicted, user.manager.state
        finally:
            await user.close()
            await support.close()
            await backend.close()

    evicted, state = asyncio.run(scenario())
    assert evicted
    assert state == "no-session"
    assert signed_out == ["u1"]
    assert [title for title, _, _ in notifier.sent] == ["New message", "New message", "Signed out"]
