"""
Queue store - durable, shared, multi-writer storage of queues and members.

Every method opens its own session, so every call is one round trip and one
point where other writers may have changed things. The only concurrency
primitive is the single-row conditional update in `transition_member`
(and the `is_active` guard in `deactivate_queue`): a zero rowcount means
another writer got there first.

After each committed write the store publishes a change event so that
subscribed sync engines re-fetch.
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from waitline.models import MemberStatus, Queue, QueueMember
from waitline.models.queue import TIME_PER_PERSON_CHECK
from waitline.schemas.queue import MemberRecord, QueueRecord
from waitline.services.change_feed import MEMBERS_TABLE, QUEUES_TABLE, ChangeEvent, ChangeFeed
from waitline.services.errors import DuplicateMembership, QueueCodeTaken, StoreError
from waitline.utils.timezone import utc_now_naive

logger = logging.getLogger(__name__)

# Host editable columns
EDITABLE_QUEUE_FIELDS = frozenset({"name", "description", "location", "time_per_person"})

INVALID_ROW_MESSAGE = "Queue data could not be read."
INVALID_TIME_PER_PERSON_MESSAGE = "Time per person must be positive."


class QueueStore:
    """Reads, inserts and conditional updates against the queue tables."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utc_now_naive,
    ):
        self._session_maker = session_maker
        self.feed = feed or ChangeFeed()
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("Queue store error: %s", e)
            raise StoreError(str(e)) from e
        except ValidationError as e:
            # A row written by another client that this version cannot read
            logger.error("Queue store returned an invalid row: %s", e)
            raise StoreError(INVALID_ROW_MESSAGE) from e

    def _notify(self, table: str, kind: str, row_id: Any = None) -> None:
        self.feed.publish(ChangeEvent(table=table, kind=kind, row_id=str(row_id) if row_id else None))

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_active_queues(self) -> list[QueueRecord]:
        """All active queues, newest first."""
        async with self._session() as db:
            result = await db.execute(
                select(Queue)
                .where(Queue.is_active == True)
                .order_by(Queue.created_at.desc())
            )
            return [QueueRecord.model_validate(row) for row in result.scalars().all()]

    async def list_waiting_members(self, queue_ids: Iterable[str]) -> list[MemberRecord]:
        """Waiting members of the given queues in serving order (joined_at, then id)."""
        queue_ids = list(queue_ids)
        if not queue_ids:
            return []
        async with self._session() as db:
            result = await db.execute(
                select(QueueMember)
                .where(
                    QueueMember.queue_id.in_(queue_ids),
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .order_by(QueueMember.joined_at.asc(), QueueMember.id.asc())
            )
            return [MemberRecord.model_validate(row) for row in result.scalars().all()]

    async def latest_waiting_membership(self, user_id: UUID) -> Optional[MemberRecord]:
        """The most recent waiting entry of a user across all queues."""
        async with self._session() as db:
            result = await db.execute(
                select(QueueMember)
                .where(
                    QueueMember.user_id == user_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .order_by(QueueMember.joined_at.desc(), QueueMember.id.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return MemberRecord.model_validate(row) if row else None

    async def get_queue(self, queue_id: str) -> Optional[QueueRecord]:
        async with self._session() as db:
            row = await db.get(Queue, queue_id)
            return QueueRecord.model_validate(row) if row else None

    async def get_member(self, member_id: UUID) -> Optional[MemberRecord]:
        async with self._session() as db:
            row = await db.get(QueueMember, member_id)
            return MemberRecord.model_validate(row) if row else None

    async def find_waiting_member_by_name(self, queue_id: str, display_name: str) -> Optional[MemberRecord]:
        """Case-insensitive display name lookup among waiting members."""
        async with self._session() as db:
            result = await db.execute(
                select(QueueMember)
                .where(
                    QueueMember.queue_id == queue_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                    func.lower(QueueMember.display_name) == display_name.lower(),
                )
                .limit(1)
            )
            row = result.scalars().first()
            return MemberRecord.model_validate(row) if row else None

    async def find_waiting_member_for_user(self, queue_id: str, user_id: UUID) -> Optional[MemberRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(QueueMember)
                .where(
                    QueueMember.queue_id == queue_id,
                    QueueMember.user_id == user_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .limit(1)
            )
            row = result.scalars().first()
            return MemberRecord.model_validate(row) if row else None

    async def oldest_waiting_member(self, queue_id: str) -> Optional[MemberRecord]:
        """Head of the line, or None if nobody is waiting."""
        async with self._session() as db:
            result = await db.execute(
                select(QueueMember)
                .where(
                    QueueMember.queue_id == queue_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .order_by(QueueMember.joined_at.asc(), QueueMember.id.asc())
                .limit(1)
            )
            row = result.scalars().first()
            return MemberRecord.model_validate(row) if row else None

    # =========================================================================
    # Inserts
    # =========================================================================

    async def insert_queue(
        self,
        *,
        queue_id: str,
        host_user_id: UUID,
        name: str,
        description: Optional[str],
        location: Optional[str],
        time_per_person: int,
    ) -> QueueRecord:
        """
        Insert a new active queue.

        Raises QueueCodeTaken if `queue_id` already exists.
        """
        queue = Queue(
            id=queue_id,
            host_user_id=host_user_id,
            name=name,
            description=description,
            location=location,
            time_per_person=time_per_person,
            is_active=True,
            created_at=self._clock(),
        )
        try:
            async with self._session() as db:
                db.add(queue)
                await db.commit()
                record = QueueRecord.model_validate(queue)
        except IntegrityError as e:
            if TIME_PER_PERSON_CHECK in str(e.orig):
                raise StoreError(INVALID_TIME_PER_PERSON_MESSAGE) from e
            raise QueueCodeTaken(queue_id) from e

        self._notify(QUEUES_TABLE, "insert", queue_id)
        return record

    async def insert_member(
        self,
        *,
        queue_id: str,
        user_id: UUID,
        display_name: str,
        contact_info: Optional[str],
    ) -> MemberRecord:
        """
        Insert a waiting entry stamped with the current time.

        Raises DuplicateMembership when the waiting uniqueness indexes
        reject it.
        """
        member = QueueMember(
            queue_id=queue_id,
            user_id=user_id,
            display_name=display_name,
            contact_info=contact_info,
            status=MemberStatus.WAITING.value,
            joined_at=self._clock(),
        )
        try:
            async with self._session() as db:
                db.add(member)
                await db.commit()
                record = MemberRecord.model_validate(member)
        except IntegrityError as e:
            field = "display_name" if "uq_queue_members_waiting_name" in str(e.orig) else "user_id"
            raise DuplicateMembership(field) from e

        self._notify(MEMBERS_TABLE, "insert", record.id)
        return record

    # =========================================================================
    # Conditional updates
    # =========================================================================

    async def update_queue_fields(self, queue_id: str, host_user_id: UUID, fields: dict[str, Any]) -> bool:
        """Update display metadata of an active queue owned by `host_user_id`."""
        values = {k: v for k, v in fields.items() if k in EDITABLE_QUEUE_FIELDS}
        if not values:
            return False
        try:
            async with self._session() as db:
                result = await db.execute(
                    update(Queue)
                    .where(
                        Queue.id == queue_id,
                        Queue.host_user_id == host_user_id,
                        Queue.is_active == True,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                changed = result.rowcount > 0
        except IntegrityError as e:
            raise StoreError(INVALID_TIME_PER_PERSON_MESSAGE) from e

        if changed:
            self._notify(QUEUES_TABLE, "update", queue_id)
        return changed

    async def transition_member(self, member_id: UUID, queue_id: str, new_status: MemberStatus) -> bool:
        """
        Move a waiting entry to a terminal status.

        Only succeeds while the row is still waiting; returns False when
        another writer already moved it (or it never existed).
        """
        if not new_status.is_terminal:
            raise ValueError("members can only leave the waiting state")
        async with self._session() as db:
            result = await db.execute(
                update(QueueMember)
                .where(
                    QueueMember.id == member_id,
                    QueueMember.queue_id == queue_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .values(status=new_status.value, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            won = result.rowcount == 1

        if won:
            self._notify(MEMBERS_TABLE, "update", member_id)
        else:
            logger.debug("Member %s in %s was no longer waiting (wanted %s)", member_id, queue_id, new_status.value)
        return won

    async def deactivate_queue(self, queue_id: str) -> bool:
        """Set is_active to False. Returns False if it already was."""
        async with self._session() as db:
            result = await db.execute(
                update(Queue)
                .where(Queue.id == queue_id, Queue.is_active == True)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            changed = result.rowcount > 0

        if changed:
            self._notify(QUEUES_TABLE, "update", queue_id)
        return changed

    async def close_waiting_members(self, queue_id: str) -> int:
        """Move every waiting entry of a queue to CLOSED. Returns the count."""
        async with self._session() as db:
            result = await db.execute(
                update(QueueMember)
                .where(
                    QueueMember.queue_id == queue_id,
                    QueueMember.status == MemberStatus.WAITING.value,
                )
                .values(status=MemberStatus.CLOSED.value, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            closed = result.rowcount

        if closed:
            self._notify(MEMBERS_TABLE, "update")
        return closed

    async def end_queue_atomic(self, queue_id: str) -> tuple[bool, int]:
        """Deactivate a queue and close its waiters in one transaction."""
        async with self._session() as db:
            async with db.begin():
                deactivated = await db.execute(
                    update(Queue)
                    .where(Queue.id == queue_id, Queue.is_active == True)
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                closed = await db.execute(
                    update(QueueMember)
                    .where(
                        QueueMember.queue_id == queue_id,
                        QueueMember.status == MemberStatus.WAITING.value,
                    )
                    .values(status=MemberStatus.CLOSED.value, updated_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
            changed, closed_count = deactivated.rowcount > 0, closed.rowcount

        if changed:
            self._notify(QUEUES_TABLE, "update", queue_id)
        if closed_count:
            self._notify(MEMBERS_TABLE, "update")
        return changed, closed_count
