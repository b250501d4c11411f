from datetime import datetime, timedelta, timezone

from chatsync.client.messages import ConfirmedMessage, PendingMessage, SessionSnapshot
from chatsync.client.reconciliation import (
    add_pending,
    latest_confirmed_at,
    merge_snapshot,
    pending_messages,
    reconcile,
    remove_pending,
)

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _pending(local_id, content, at, sender="u1", client_id=None, session="s1"):
    return PendingMessage(
        local_id=local_id,
        session_id=session,
        sender_id=sender,
        sender_role="user",
        kind="text",
        content=content,
        created_at=at,
        client_message_id=client_id,
    )


def _confirmed(msg_id, content, at, sender="u1", client_id=None, session="s1"):
    return ConfirmedMessage(
        id=msg_id,
        session_id=session,
        sender_id=sender,
        sender_role="user",
        kind="text",
        content=content,
        created_at=at,
        client_message_id=client_id,
    )


def test_confirmation_promotes_placeholder():
    messages = add_pending([], _pending("temp-1", "Hello", T0))
    messages = reconcile(messages, _confirmed("srv-42", "Hello", T0 + timedelta(seconds=3)), "s1")

    assert len(messages) == 1
    assert messages[0].id == "srv-42"
    assert messages[0].content == "Hello"
    assert not messages[0].is_pending


def test_order_kept_when_confirmations_arrive_reversed():
    messages = [_pending("temp-a", "A", T0), _pending("temp-b", "B", T0 + timedelta(seconds=1))]
    b = _confirmed("srv-b", "B", T0 + timedelta(seconds=2))
    a = _confirmed("srv-a", "A", T0 + timedelta(seconds=1, milliseconds=500))

    forward = reconcile(reconcile(messages, a, "s1"), b, "s1")
    reverse = reconcile(reconcile(messages, b, "s1"), a, "s1")

    assert [m.content for m in forward] == ["A", "B"]
    assert [m.content for m in reverse] == ["A", "B"]
    assert all(not m.is_pending for m in reverse)


def test_same_confirmation_twice_is_not_duplicated():
    incoming = _confirmed("srv-1", "hi", T0)
    messages = reconcile([], incoming, "s1")
    messages = reconcile(messages, incoming, "s1")
    assert [m.key for m in messages] == ["srv-1"]


def test_message_for_other_session_is_dropped():
    messages = [_confirmed("srv-1", "hi", T0)]
    assert reconcile(messages, _confirmed("srv-2", "x", T0, session="s2"), "s1") == messages
    assert reconcile(messages, _confirmed("srv-2", "x", T0), None) == messages


def test_unmatched_message_is_inserted_in_time_order():
    messages = [_confirmed("srv-1", "one", T0), _confirmed("srv-3", "three", T0 + timedelta(seconds=2))]
    messages = reconcile(messages, _confirmed("srv-2", "two", T0 + timedelta(seconds=1), sender="sp"), "s1")
    assert [m.id for m in messages] == ["srv-1", "srv-2", "srv-3"]


def test_identical_rapid_sends_stay_separate():
    messages = [_pending("temp-1", "ok", T0), _pending("temp-2", "ok", T0 + timedelta(milliseconds=10))]
    messages = reconcile(messages, _confirmed("srv-1", "ok", T0 + timedelta(seconds=1)), "s1")

    assert [m.key for m in messages] == ["srv-1", "temp-2"]

    messages = reconcile(messages, _confirmed("srv-2", "ok", T0 + timedelta(seconds=2)), "s1")
    assert [m.key for m in messages] == ["srv-1", "srv-2"]


def test_correlation_id_picks_the_right_placeholder():
    messages = [
        _pending("temp-1", "ok", T0, client_id="c1"),
        _pending("temp-2", "ok", T0 + timedelta(milliseconds=10), client_id="c2"),
    ]
    messages = reconcile(messages, _confirmed("srv-2", "ok", T0 + timedelta(seconds=1), client_id="c2"), "s1")
    assert [m.key for m in messages] == ["temp-1", "srv-2"]


def test_other_sender_does_not_consume_placeholder():
    messages = [_pending("temp-1", "hi", T0)]
    messages = reconcile(messages, _confirmed("srv-1", "hi", T0 + timedelta(seconds=1), sender="sp"), "s1")
    assert [m.key for m in messages] == ["temp-1", "srv-1"]


def test_merge_snapshot_keeps_unconfirmed_placeholders():
    messages = [_confirmed("srv-1", "one", T0), _pending("temp-9", "later", T0 + timedelta(seconds=5))]
    snapshot = [_confirmed("srv-1", "one", T0), _confirmed("srv-2", "two", T0 + timedelta(seconds=1), sender="sp")]

    merged = merge_snapshot(messages, snapshot, "s1")

    assert [m.key for m in merged] == ["srv-1", "srv-2", "temp-9"]
    assert [m.key for m in pending_messages(merged)] == ["temp-9"]
    assert latest_confirmed_at(merged) == T0 + timedelta(seconds=1)


def test_remove_pending_only_touches_placeholders():
    messages = [_confirmed("srv-1", "one", T0), _pending("temp-1", "two", T0)]
    assert [m.key for m in remove_pending(messages, "temp-1")] == ["srv-1"]
    assert latest_confirmed_at([]) is None


def test_snapshot_rank_orders_statuses():
    row = {"id": "s1", "user_id": "u1", "status": "waiting", "started_at": T0.isoformat()}
    waiting = SessionSnapshot.from_row(row)
    ended = SessionSnapshot.from_row({**row, "status": "ended"})
    assert waiting.rank < ended.rank
    assert waiting.started_at == T0


def test_merge_snapshot_keeps_rows_delivered_during_the_read():
    messages = [_confirmed("srv-1", "one", T0), _confirmed("srv-3", "live", T0 + timedelta(seconds=2), sender="sp")]
    snapshot = [_confirmed("srv-1", "one", T0), _confirmed("srv-2", "two", T0 + timedelta(seconds=1))]

    merged = merge_snapshot(messages, snapshot, "s1")

    assert [m.key for m in merged] == ["srv-1", "srv-2", "srv-3"]
