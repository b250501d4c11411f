"""Merging optimistic placeholders with server-confirmed messages.

All functions are pure: they take the current list and return a new one.
"""
from __future__ import annotations

import logging
from typing import Iterable

from chatsync.client.messages import ConfirmedMessage, Message, PendingMessage

logger = logging.getLogger(__name__)


def _sort(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: m.created_at)


def reconcile(messages: list[Message], incoming: ConfirmedMessage, session_id: str | None) -> list[Message]:
    """Apply one confirmed message.

    Replaces an entry with the same id, else the placeholder it confirms
    (correlation id first, then the first placeholder with equal content and
    sender), else appends and re-sorts by ``created_at``. Messages for another
    session are ignored.
    """
    if session_id is None or incoming.session_id != session_id:
        logger.debug("Dropping message %s for session %s", incoming.id, incoming.session_id)
        return list(messages)

    for index, current in enumerate(messages):
        if not current.is_pending and current.id == incoming.id:
            updated = list(messages)
            updated[index] = incoming
            return updated

    index = _find_placeholder(messages, incoming)
    if index is not None:
        updated = list(messages)
        logger.debug("Promoting %s to %s", updated[index].key, incoming.id)
        updated[index] = incoming
        return updated

    return _sort([*messages, incoming])


def _find_placeholder(messages: list[Message], incoming: ConfirmedMessage) -> int | None:
    if incoming.client_message_id:
        for index, current in enumerate(messages):
            if current.is_pending and current.client_message_id == incoming.client_message_id:
                return index
    for index, current in enumerate(messages):
        if not current.is_pending:
            continue
        if incoming.client_message_id and current.client_message_id:
            # both sides carry correlation ids and they differ
            continue
        if current.content == incoming.content and current.sender_id == incoming.sender_id:
            return index
    return None


def add_pending(messages: list[Message], pending: PendingMessage) -> list[Message]:
    return [*messages, pending]


def remove_pending(messages: list[Message], local_id: str) -> list[Message]:
    return [m for m in messages if not (m.is_pending and m.local_id == local_id)]


def merge_snapshot(
    messages: list[Message], confirmed: Iterable[ConfirmedMessage], session_id: str | None
) -> list[Message]:
    """Rebuild from an authoritative message list, keeping placeholders still unconfirmed.

    Confirmed rows newer than the snapshot survive: they were delivered in
    realtime while the snapshot was being read.
    """
    confirmed = sorted(confirmed, key=lambda m: m.created_at)
    cutoff = confirmed[-1].created_at if confirmed else None
    merged: list[Message] = [
        m for m in messages if m.is_pending or cutoff is None or m.created_at >= cutoff
    ]
    for message in confirmed:
        merged = reconcile(merged, message, session_id)
    return _sort(merged)


def pending_messages(messages: list[Message]) -> list[PendingMessage]:
    return [m for m in messages if m.is_pending]


def latest_confirmed_at(messages: list[Message]):
    confirmed = [m.created_at for m in messages if not m.is_pending]
    return max(confirmed) if confirmed else None
