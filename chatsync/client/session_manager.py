from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from chatsync.client.messages import ConfirmedMessage, Message, PendingMessage, SessionSnapshot
from chatsync.client.operations_client import OperationsClient
from chatsync.client.reconciliation import (
    add_pending,
    latest_confirmed_at,
    merge_snapshot,
    reconcile,
    remove_pending,
)
from chatsync.models.base import utcnow
from chatsync.models.chat import SESSION_ACTIVE, SESSION_ENDED, SESSION_WAITING
from chatsync.models.message import KIND_TEXT, ROLE_SYSTEM, ROLE_USER
from chatsync.realtime.feed import EVENT_INSERT, EVENT_UPDATE, EventSpec
from chatsync.realtime.monitor import CONNECTED, ConnectionMonitor
from chatsync.realtime.transport import ConnectionStatus, RealtimeTransport
from chatsync.services.notifications import Notifier
from chatsync.services.operations import END_MANUAL, TIMEOUT_REASONS
from chatsync.services.results import INVALID_ARGUMENT, SESSION_NOT_FOUND, ChatOperationError
from chatsync.services.staleness import DEFAULT_STALE_AFTER, is_stale

logger = logging.getLogger(__name__)

NO_SESSION = "no-session"


class ChatSessionManager:
    """Chat session state for one authenticated context.

    States: no-session -> waiting -> active -> ended. Holds the current
    session snapshot and the merged message list; the realtime transport keeps
    both current, ``refresh`` repairs whatever the transport missed.
    """

    def __init__(
        self,
        user_id: str,
        operations: OperationsClient,
        transport: RealtimeTransport,
        role: str = ROLE_USER,
        monitor: ConnectionMonitor | None = None,
        notifier: Notifier | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        polling_interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.user_id = user_id
        self.operations = operations
        self.transport = transport
        self.role = role
        self.monitor = monitor
        self.notifier = notifier
        self.stale_after = stale_after
        self.polling_interval = polling_interval
        self.clock = clock

        self.session: SessionSnapshot | None = None
        self.messages: list[Message] = []
        self.error: str | None = None
        self.loading = False
        self.notices: list[str] = []

        self._subscriptions: list[str] = []
        self._polling_task: asyncio.Task | None = None
        self._closed = False
        if monitor is not None:
            monitor.add_listener(self._on_connection_change)
        transport.add_status_listener(self._on_connection_change)

    @property
    def state(self) -> str:
        return self.session.status if self.session else NO_SESSION

    @property
    def is_stale(self) -> bool:
        if not self.session:
            return False
        return is_stale(self.session.status, self.session.started_at, self.clock(), self.stale_after)

    @property
    def connection_status(self) -> ConnectionStatus:
        status = self.transport.get_connection_status()
        if self.monitor is not None and status.is_connected and not self.monitor.is_connected(status):
            return ConnectionStatus(False, self.monitor.state, "Heartbeat " + self.monitor.state)
        return status

    @property
    def is_connected(self) -> bool:
        return self.connection_status.is_connected

    @property
    def is_polling(self) -> bool:
        return self._polling_task is not None

    async def start(self, force_new: bool = False) -> SessionSnapshot | None:
        if self._closed:
            return None
        self.loading = True
        self.error = None
        try:
            if force_new:
                self.clear()
                ended = await self.operations.end_waiting_sessions(self.user_id)
                if ended:
                    logger.info("Ended %s waiting sessions before starting fresh", len(ended))
            row = await self.operations.start_session(self.user_id)
        except ChatOperationError as exc:
            logger.error("Error starting session: %s", exc)
            self.error = str(exc)
            return None
        finally:
            self.loading = False

        if self._closed:
            return None
        snapshot = SessionSnapshot.from_row(row)
        await self._adopt(snapshot)
        return self.session

    async def load_existing(self) -> SessionSnapshot | None:
        if self._closed:
            return None
        try:
            row = await self.operations.find_open_session(self.user_id, SESSION_ACTIVE)
            if row is None:
                row = await self.operations.find_open_session(self.user_id, SESSION_WAITING)
            if row is None:
                logger.debug("No existing session for %s", self.user_id)
                return None

            snapshot = SessionSnapshot.from_row(row)
            if is_stale(snapshot.status, snapshot.started_at, self.clock(), self.stale_after):
                logger.debug("Found stale session %s, cleaning up", snapshot.id)
                await self.operations.reap_stale_sessions(self.user_id)
                return None
        except ChatOperationError as exc:
            logger.error("Error checking existing session: %s", exc)
            self.error = str(exc)
            return None

        if self._closed:
            return None
        await self._adopt(snapshot)
        return self.session

    async def open(self, session_id: str) -> SessionSnapshot | None:
        """Attach to a known session, as a specialist picking one from the queue does."""
        if self._closed:
            return None
        try:
            row = await self.operations.get_session(session_id)
        except ChatOperationError as exc:
            self.error = str(exc)
            return None
        if row is None:
            self.error = "Chat session not found"
            return None
        if self._closed:
            return None
        await self._adopt(SessionSnapshot.from_row(row))
        return self.session

    async def send(
        self,
        content: str,
        kind: str = KIND_TEXT,
        metadata: dict[str, Any] | None = None,
        sender_role: str | None = None,
    ) -> ConfirmedMessage | None:
        role = sender_role or self.role
        if not self.session:
            self.error = "No active chat session"
            raise ChatOperationError(SESSION_NOT_FOUND, self.error)
        if not (content or "").strip():
            raise ChatOperationError(INVALID_ARGUMENT, "Message content is empty")

        session_id = self.session.id
        client_message_id = uuid.uuid4().hex
        pending: PendingMessage | None = None
        if role == ROLE_USER:
            pending = PendingMessage(
                local_id=f"temp-{client_message_id}",
                session_id=session_id,
                sender_id=self.user_id,
                sender_role=role,
                kind=kind,
                content=content,
                created_at=self.clock(),
                metadata=metadata,
                client_message_id=client_message_id,
            )
            self.messages = add_pending(self.messages, pending)

        try:
            data = await self.operations.send_message(
                session_id, self.user_id, role, content, kind, metadata, client_message_id
            )
        except ChatOperationError as exc:
            if pending is not None:
                self.messages = remove_pending(self.messages, pending.local_id)
            self.error = str(exc)
            logger.error("Failed to send message: %s", exc)
            raise

        if self._closed:
            return None
        self.error = None
        if data.get("session"):
            self._apply_session(SessionSnapshot.from_row(data["session"]))
        return ConfirmedMessage.from_row(data["message"])

    async def end(self, reason: str = END_MANUAL) -> bool:
        if not self.session:
            return False
        try:
            await self.operations.end_session(self.session.id, self.user_id, reason)
        except ChatOperationError as exc:
            logger.error("Error ending session: %s", exc)
            self.error = str(exc)
            return False
        self.clear()
        return True

    async def claim(self) -> SessionSnapshot | None:
        if not self.session or self.session.status != SESSION_WAITING:
            return self.session
        try:
            row = await self.operations.claim_session(self.session.id, self.user_id)
        except ChatOperationError as exc:
            logger.error("Failed to claim session: %s", exc)
            self.error = str(exc)
            return None
        if not self._closed:
            self._apply_session(SessionSnapshot.from_row(row))
        return self.session

    async def refresh(self) -> None:
        """Rebuild subscriptions, then re-read the session and its messages from storage."""
        if self._closed:
            return
        if self.session is None:
            await self.load_existing()
            self.transport.reconnect_all()
            return

        session_id = self.session.id
        # resubscribe first so nothing committed after the read is missed
        self.transport.reconnect_all()
        try:
            row = await self.operations.get_session(session_id)
            rows = await self.operations.list_messages(session_id)
        except ChatOperationError as exc:
            logger.error("Refresh failed: %s", exc)
            self.error = str(exc)
            return

        if self._closed or self.session is None or self.session.id != session_id:
            return
        if row is not None:
            self._apply_session(SessionSnapshot.from_row(row))
        confirmed = [ConfirmedMessage.from_row(r) for r in rows]
        self.messages = merge_snapshot(self.messages, confirmed, session_id)

    async def force_reconnect(self) -> None:
        logger.debug("Force reconnecting session %s", self.session.id if self.session else None)
        await self.refresh()

    async def poll_once(self) -> int:
        """Backfill messages from the newest confirmed timestamp on; already-known rows reconcile as no-ops."""
        if self._closed or self.session is None:
            return 0
        session_id = self.session.id
        try:
            rows = await self.operations.list_messages(session_id, since=latest_confirmed_at(self.messages))
            row = await self.operations.get_session(session_id)
        except ChatOperationError as exc:
            logger.error("Polling fallback error: %s", exc)
            return 0
        if self.session is None or self.session.id != session_id:
            return 0
        for message_row in rows:
            await self._on_message_row(message_row)
        if row is not None:
            self._apply_session(SessionSnapshot.from_row(row))
        return len(rows)

    def clear(self) -> None:
        self._unsubscribe()
        self._stop_polling()
        self.session = None
        self.messages = []
        self.error = None

    async def close(self) -> None:
        """Component teardown; late results from in-flight calls are discarded."""
        self._closed = True
        if self.monitor is not None:
            self.monitor.remove_listener(self._on_connection_change)
        self.transport.remove_status_listener(self._on_connection_change)
        self._unsubscribe()
        task, self._polling_task = self._polling_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _adopt(self, snapshot: SessionSnapshot) -> None:
        if self.session is None or self.session.id != snapshot.id:
            self._unsubscribe()
            self.messages = []
        self.session = snapshot
        self._subscribe(snapshot.id)

        try:
            rows = await self.operations.list_messages(snapshot.id)
        except ChatOperationError as exc:
            logger.error("Error loading messages: %s", exc)
            self.error = str(exc)
            return
        if self._closed or self.session is None or self.session.id != snapshot.id:
            return
        confirmed = [ConfirmedMessage.from_row(r) for r in rows]
        self.messages = merge_snapshot(self.messages, confirmed, snapshot.id)
        logger.debug("Loaded %s messages for %s", len(confirmed), snapshot.id)
        if not self.is_connected:
            self._start_polling()

    def _subscribe(self, session_id: str) -> None:
        if self._subscriptions:
            return
        channel = f"chat-{session_id}"
        self._subscriptions = [
            self.transport.subscribe(
                channel, EventSpec(EVENT_INSERT, "chat_messages", ("session_id", session_id)), self._on_message_row
            ),
            self.transport.subscribe(
                channel, EventSpec(EVENT_UPDATE, "chat_sessions", ("id", session_id)), self._on_session_row
            ),
        ]

    def _unsubscribe(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        for sub_id in subs:
            self.transport.unsubscribe(sub_id)

    def _apply_session(self, snapshot: SessionSnapshot) -> None:
        current = self.session
        if current is None or current.id != snapshot.id:
            return
        # events can arrive out of order across channels; status never moves backwards
        if snapshot.rank < current.rank:
            logger.debug("Ignoring stale %s snapshot for %s", snapshot.status, snapshot.id)
            return
        if snapshot.status != current.status:
            logger.info("Session %s: %s -> %s", snapshot.id, current.status, snapshot.status)
        self.session = snapshot

    async def _on_message_row(self, row: dict[str, Any]) -> None:
        if self._closed or self.session is None:
            return
        incoming = ConfirmedMessage.from_row(row)
        known = any(not m.is_pending and m.id == incoming.id for m in self.messages)
        self.messages = reconcile(self.messages, incoming, self.session.id)
        if (
            not known
            and incoming.session_id == self.session.id
            and incoming.sender_id != self.user_id
            and incoming.sender_role != ROLE_SYSTEM
            and self.notifier is not None
        ):
            await self.notifier.notify(
                "New message",
                incoming.content[:100],
                {"session_id": incoming.session_id, "message_id": incoming.id},
            )

    async def _on_session_row(self, row: dict[str, Any]) -> None:
        if self._closed or self.session is None or row.get("id") != self.session.id:
            return
        snapshot = SessionSnapshot.from_row(row)
        previous = self.session.status
        self._apply_session(snapshot)
        if (
            self.session is snapshot
            and snapshot.status == SESSION_ENDED
            and previous != SESSION_ENDED
            and snapshot.end_reason in TIMEOUT_REASONS
        ):
            notice = "This chat session has been automatically ended due to inactivity."
            self.notices.append(notice)
            if self.notifier is not None:
                await self.notifier.notify("Session timed out", notice, {"session_id": snapshot.id})

    async def _on_connection_change(self, change: str | ConnectionStatus) -> None:
        """Reacts to heartbeat states and to transport status flips alike."""
        if self._closed or self.session is None:
            return
        heartbeat_ok = self.monitor is None or self.monitor.state == CONNECTED
        if not heartbeat_ok:
            self._start_polling()
            return
        if self.transport.get_connection_status().is_connected and self._polling_task is None:
            return

        # heartbeat is fine but the channel dropped, or we are coming back from an outage
        self._stop_polling()
        logger.info("Resyncing session %s after connection change", self.session.id)
        await self.force_reconnect()
        if not self._closed and self.session is not None and not self.is_connected:
            self._start_polling()

    def _start_polling(self) -> None:
        if self.session is None or self._polling_task is not None:
            return
        logger.warning("Connection lost, starting polling fallback")
        self._polling_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.polling_interval)
            await self.poll_once()

    def _stop_polling(self) -> None:
        task, self._polling_task = self._polling_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
