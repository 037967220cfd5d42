"""
Sync engine - keeps one identity's view of the queues up to date.

The engine is the only writer of its snapshot. It refreshes:
- once when started (and again whenever the identity changes),
- on every change event for the queues / queue_members tables,
- after every mutation issued through the queue service.

Refreshes are not cancelled when a newer one starts. Each refresh takes a
ticket from a monotonic counter and a response is applied only if no
later ticket has been applied already, so a slow, stale response can
never overwrite a fresher snapshot.

A failed refresh keeps the last good snapshot and records an error
message; stale data is acceptable, a half-applied snapshot is not.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Optional

from waitline.auth.identity import IdentityProvider, Session, Unsubscribe
from waitline.schemas.queue import MemberRecord, OperationResult, QueueView, SnapshotView
from waitline.services.change_feed import MEMBERS_TABLE, QUEUES_TABLE, ChangeEvent, Subscription
from waitline.services.errors import StoreError
from waitline.services.queue_store import QueueStore
from waitline.services.view import user_position

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SnapshotView], None]

REFRESH_FAILED_MESSAGE = "Failed to refresh queue data."


class SyncEngine:
    """Owns the in-memory snapshot for one identity."""

    def __init__(self, store: QueueStore, identity: IdentityProvider):
        self._store = store
        self._identity = identity
        self._session: Optional[Session] = identity.get_current_session()

        self._snapshot = SnapshotView(is_loading=True)
        self._issued = 0   # last ticket handed out
        self._applied = 0  # ticket of the snapshot currently held

        self._subscription: Optional[Subscription] = None
        self._identity_unsubscribe: Optional[Unsubscribe] = None
        self._listeners: list[SnapshotListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._started = False

    # -------------------- reactive values --------------------

    @property
    def snapshot(self) -> SnapshotView:
        return self._snapshot

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def queues(self) -> tuple[QueueView, ...]:
        return self._snapshot.queues

    @property
    def active_host_queue(self) -> Optional[QueueView]:
        return self._snapshot.active_host_queue

    @property
    def current_queue(self) -> Optional[QueueView]:
        return self._snapshot.current_queue

    @property
    def current_member(self) -> Optional[MemberRecord]:
        return self._snapshot.current_member

    @property
    def user_position(self) -> Optional[int]:
        return self._snapshot.user_position

    @property
    def is_loading(self) -> bool:
        return self._snapshot.is_loading

    @property
    def error_message(self) -> Optional[str]:
        return self._snapshot.error_message

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def get_queue_by_id(self, queue_id: str) -> Optional[QueueView]:
        return next((q for q in self._snapshot.queues if q.id == queue_id), None)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call `listener` with every snapshot that gets applied."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # -------------------- lifecycle --------------------

    async def start(self) -> None:
        """Subscribe to changes and load the first snapshot."""
        if self._started:
            return
        self._started = True
        self._identity_unsubscribe = self._identity.on_session_change(self._handle_session_change)
        self._resubscribe()
        await self.refresh(show_loader=True)

    async def stop(self) -> None:
        """Tear down the subscription and wait for in-flight work."""
        self._started = False
        if self._identity_unsubscribe:
            self._identity_unsubscribe()
            self._identity_unsubscribe = None
        self._unsubscribe()
        await self.settle()

    async def settle(self) -> None:
        """Wait for refreshes scheduled by session changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _resubscribe(self) -> None:
        self._unsubscribe()
        if self._session is None:
            return
        self._subscription = self._store.feed.subscribe(
            (QUEUES_TABLE, MEMBERS_TABLE),
            self._on_change,
        )
        logger.debug("Subscribed to queue changes for %s", self._session.user_id)

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _handle_session_change(self, session: Optional[Session]) -> None:
        if session == self._session:
            return
        logger.info("Session changed, resubscribing")
        self._session = session
        self._resubscribe()
        task = asyncio.create_task(self.refresh(show_loader=True))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_change(self, event: ChangeEvent) -> None:
        await self.refresh()

    # -------------------- refresh --------------------

    async def refresh(self, show_loader: bool = False) -> OperationResult[SnapshotView]:
        """
        Re-fetch active queues, their waiting members and the caller's own
        membership, then publish a new snapshot.
        """
        self._issued += 1
        ticket = self._issued
        session = self._session

        if session is None:
            self._apply(ticket, session, SnapshotView(version=ticket))
            return OperationResult.ok(self._snapshot)

        if show_loader:
            self._snapshot = self._snapshot.model_copy(update={"is_loading": True})

        try:
            snapshot = await self._fetch(session, ticket)
        except StoreError as e:
            message = str(e) or REFRESH_FAILED_MESSAGE
            logger.error("Refresh failed, keeping last snapshot: %s", message)
            if ticket > self._applied and session == self._session:
                self._snapshot = self._snapshot.model_copy(
                    update={"is_loading": False, "error_message": message}
                )
            return OperationResult.fail(message)

        self._apply(ticket, session, snapshot)
        return OperationResult.ok(self._snapshot)

    async def _fetch(self, session: Session, ticket: int) -> SnapshotView:
        queue_rows = await self._store.list_active_queues()
        member_rows = await self._store.list_waiting_members(q.id for q in queue_rows)

        people_by_queue: dict[str, list[MemberRecord]] = defaultdict(list)
        for member in member_rows:
            people_by_queue[member.queue_id].append(member)

        queues = tuple(
            QueueView(
                **row.model_dump(),
                people=tuple(sorted(people_by_queue.get(row.id, []), key=lambda m: (m.joined_at, m.id))),
            )
            for row in queue_rows
        )
        active_host_queue = next((q for q in queues if q.host_user_id == session.user_id), None)

        membership = await self._store.latest_waiting_membership(session.user_id)
        current_queue = None
        if membership is not None:
            # Resolved from this snapshot; an ended queue resolves to None
            current_queue = next((q for q in queues if q.id == membership.queue_id), None)

        snapshot = SnapshotView(
            version=ticket,
            queues=queues,
            active_host_queue=active_host_queue,
            current_queue=current_queue,
            current_member=membership,
            is_loading=False,
            error_message=None,
        )
        return snapshot.model_copy(update={"user_position": user_position(snapshot)})

    def _apply(self, ticket: int, session: Optional[Session], snapshot: SnapshotView) -> bool:
        if ticket < self._applied:
            logger.debug("Discarding stale snapshot %s (have %s)", ticket, self._applied)
            return False
        if session != self._session:
            logger.debug("Discarding snapshot %s fetched for a previous session", ticket)
            return False

        self._applied = ticket
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")
        return True
