import asyncio
from datetime import timedelta

from chatsync.client.phone_calls import PhoneCallTracker
from chatsync.realtime.transport import RealtimeTransport
from chatsync.services import results
from chatsync.services.phone_calls import is_expired

from helpers import eventually, make_backend


async def _active_chat(backend):
    chat = (await backend.operations.start_or_reuse_session("u1")).data
    await backend.operations.claim_session(chat["id"], "sp1")
    return chat


def test_request_posts_message_and_is_reused(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        try:
            chat = await _active_chat(backend)
            first = await backend.phone_calls.request_call(chat["id"], "sp1")
            second = await backend.phone_calls.request_call(chat["id"], "sp1")
            stranger = await backend.phone_calls.request_call(chat["id"], "sp9")
            rows = await backend.operations.list_messages(chat["id"])
        finally:
            await backend.close()
        return first, second, stranger, rows

    first, second, stranger, rows = asyncio.run(scenario())
    assert first.data["status"] == "pending"
    assert first.data["user_id"] == "u1"
    assert second.data["id"] == first.data["id"]
    assert stranger.error_code == results.PERMISSION_DENIED
    assert [r["kind"] for r in rows] == ["phone_call_request"]
    assert rows[0]["metadata"]["request_id"] == first.data["id"]


def test_accept_then_complete(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        calls = backend.phone_calls
        try:
            chat = await _active_chat(backend)
            req = (await calls.request_call(chat["id"], "sp1")).data
            wrong_user = await calls.respond(req["id"], "sp1", True)
            accepted = await calls.respond(req["id"], "u1", True)
            repeat = await calls.respond(req["id"], "u1", True)
            flip = await calls.respond(req["id"], "u1", False)
            done = await calls.complete(req["id"])
            active = await calls.active_request(chat["id"])
        finally:
            await backend.close()
        return wrong_user, accepted, repeat, flip, done, active

    wrong_user, accepted, repeat, flip, done, active = asyncio.run(scenario())
    assert wrong_user.error_code == results.PERMISSION_DENIED
    assert accepted.data["status"] == "accepted"
    assert accepted.data["initiated_at"] is not None
    assert repeat.success
    assert flip.error_code == results.REQUEST_NOT_PENDING
    assert done.data["status"] == "completed"
    assert active is None


def test_expired_request_cannot_be_answered(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        calls = backend.phone_calls
        try:
            chat = await _active_chat(backend)
            req = (await calls.request_call(chat["id"], "sp1")).data
            clock.advance(minutes=6)
            active = await calls.active_request(chat["id"])
            answer = await calls.respond(req["id"], "u1", True)
            replacement = await calls.request_call(chat["id"], "sp1")
            missing = await calls.respond("nope", "u1", True)
        finally:
            await backend.close()
        return req, active, answer, replacement, missing

    req, active, answer, replacement, missing = asyncio.run(scenario())
    assert is_expired(req, clock.now)
    assert not is_expired(req, clock.now - timedelta(minutes=2))
    assert active is None
    assert answer.error_code == results.REQUEST_EXPIRED
    assert replacement.data["id"] != req["id"]
    assert missing.error_code == results.REQUEST_NOT_FOUND


def test_tracker_follows_requests_in_realtime(db_url, clock):
    async def scenario():
        backend = await make_backend(db_url, clock)
        transport = RealtimeTransport(backend.feed)
        tracker = PhoneCallTracker("u1", backend.client(), transport)
        try:
            chat = await _active_chat(backend)
            await tracker.watch(chat["id"])
            assert tracker.active_request is None

            req = (await backend.phone_calls.request_call(chat["id"], "sp1")).data
            await eventually(lambda: tracker.active_request is not None)
            assert tracker.active_request["id"] == req["id"]

            assert await tracker.accept()
            assert tracker.active_request is None
            assert not await tracker.decline()
            tracker.unwatch()
            assert transport.subscription_ids == []
        finally:
            await transport.close()
            await backend.close()

    asyncio.run(scenario())
