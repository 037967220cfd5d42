"""
Queue service - join, leave, call next, remove, end.

Every public operation returns an OperationResult and never raises:
- validation problems fail immediately, before anything is written;
- losing a race on a conditional update is reported as "nothing to do";
- store errors fail with a recoverable message and leave the snapshot alone;
- running out of queue code attempts fails that one create call.

Successful mutations refresh the sync engine before returning, so the
caller sees the result without waiting for the change event.

The duplicate checks in `join_queue` are read-then-write. Two joins racing
past them can both insert unless the database enforces the partial unique
indexes created by `init_db(enforce_waiting_uniqueness=True)`; with the
indexes the loser gets the same "already in this queue" message.
"""

import logging
import random
from typing import Callable, Optional
from uuid import UUID

from waitline.auth.identity import IdentityProvider, Session
from waitline.config import Settings, get_settings
from waitline.models import MemberStatus
from waitline.schemas.queue import MemberRecord, OperationResult, QueueRecord, QueueView
from waitline.services.code_generator import generate_queue_code, normalize_queue_code
from waitline.services.errors import DuplicateMembership, QueueCodeTaken, StoreError
from waitline.services.queue_store import QueueStore
from waitline.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "Unnamed Queue"

# Messages shown to users
NOT_SIGNED_IN = "You must be logged in to manage queues."
NAME_REQUIRED = "Name is required."
QUEUE_NAME_REQUIRED = "Queue name is required."
INVALID_TIME_PER_PERSON = "Time per person must be a positive number of minutes."
QUEUE_NOT_ACTIVE = "Queue is not active."
QUEUE_NOT_FOUND = "Queue not found."
NAME_TAKEN = "That name is already in this queue."
ALREADY_IN_QUEUE = "You are already in this queue."
NOT_HOST = "Only the host can manage this queue."
CODE_EXHAUSTED = "Could not create a unique queue code. Please try again."
NO_ONE_WAITING = "No one is waiting."
NOT_WAITING = "Nothing to do, this person is no longer waiting."
NOT_IN_QUEUE = "You are not in a queue."
NOT_YOUR_PLACE = "You can only leave your own place in line."


def _clean(value: Optional[str]) -> Optional[str]:
    """Trim; blank becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


class QueueService:
    """Mutations on queues, guarded before they reach the store."""

    def __init__(
        self,
        store: QueueStore,
        engine: SyncEngine,
        identity: IdentityProvider,
        settings: Optional[Settings] = None,
        code_factory: Optional[Callable[[], str]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self._engine = engine
        self._identity = identity
        self._settings = settings or get_settings()
        self._code_factory = code_factory or (
            lambda: generate_queue_code(self._settings.queue_code_length, rng=rng)
        )

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    def _session(self) -> Optional[Session]:
        return self._identity.get_current_session()

    async def _refresh(self) -> None:
        result = await self._engine.refresh()
        if not result.success:
            # The write succeeded; the next change event will retry the read
            logger.warning("Refresh after mutation failed: %s", result.message)

    async def _hosted_queue(self, queue_id: str, session: Session) -> tuple[Optional[QueueRecord], Optional[str]]:
        queue = await self._store.get_queue(queue_id)
        if queue is None:
            return None, QUEUE_NOT_FOUND
        if queue.host_user_id != session.user_id:
            return None, NOT_HOST
        return queue, None

    # =========================================================================
    # Host operations
    # =========================================================================

    async def create_queue(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        time_per_person: Optional[int] = None,
    ) -> OperationResult[QueueView]:
        """
        Create an active queue with a fresh code.

        A code collision is the only failure that is retried; after
        `queue_code_max_attempts` collisions the call fails.
        """
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)

        if name is None:
            clean_name = DEFAULT_QUEUE_NAME
        else:
            clean_name = name.strip()
            if not clean_name:
                return OperationResult.fail(QUEUE_NAME_REQUIRED)

        if time_per_person is None:
            time_per_person = self._settings.default_time_per_person
        if isinstance(time_per_person, bool) or not isinstance(time_per_person, int) or time_per_person <= 0:
            return OperationResult.fail(INVALID_TIME_PER_PERSON)

        attempts = self._settings.queue_code_max_attempts
        for attempt in range(1, attempts + 1):
            code = self._code_factory()
            try:
                record = await self._store.insert_queue(
                    queue_id=code,
                    host_user_id=session.user_id,
                    name=clean_name,
                    description=_clean(description),
                    location=_clean(location),
                    time_per_person=time_per_person,
                )
            except QueueCodeTaken:
                logger.info("Queue code %s taken (attempt %s/%s)", code, attempt, attempts)
                continue
            except StoreError as e:
                return OperationResult.fail(str(e))

            logger.info("Queue %s created by %s", record.id, session.user_id)
            await self._refresh()
            return OperationResult.ok(QueueView(**record.model_dump()))

        logger.error("Gave up allocating a queue code after %s attempts", attempts)
        return OperationResult.fail(CODE_EXHAUSTED)

    async def update_queue(
        self,
        queue_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        time_per_person: Optional[int] = None,
    ) -> OperationResult[QueueRecord]:
        """Edit display metadata. Only fields that are not None change."""
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)
        queue_id = normalize_queue_code(queue_id)

        fields: dict = {}
        if name is not None:
            if not name.strip():
                return OperationResult.fail(QUEUE_NAME_REQUIRED)
            fields["name"] = name.strip()
        if description is not None:
            fields["description"] = _clean(description)
        if location is not None:
            fields["location"] = _clean(location)
        if time_per_person is not None:
            if isinstance(time_per_person, bool) or not isinstance(time_per_person, int) or time_per_person <= 0:
                return OperationResult.fail(INVALID_TIME_PER_PERSON)
            fields["time_per_person"] = time_per_person

        try:
            queue, error = await self._hosted_queue(queue_id, session)
            if error:
                return OperationResult.fail(error)
            if not queue.is_active:
                return OperationResult.fail(QUEUE_NOT_ACTIVE)
            if fields:
                await self._store.update_queue_fields(queue_id, session.user_id, fields)
            updated = await self._store.get_queue(queue_id)
        except StoreError as e:
            return OperationResult.fail(str(e))

        await self._refresh()
        return OperationResult.ok(updated)

    async def call_next(self, queue_id: str) -> OperationResult[MemberRecord]:
        """
        Serve the person at the head of the line.

        If someone else serves (or removes) that person between our read
        and our update, we report an empty line instead of retrying: each
        member is served at most once.
        """
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)
        queue_id = normalize_queue_code(queue_id)

        try:
            _queue, error = await self._hosted_queue(queue_id, session)
            if error:
                return OperationResult.fail(error)

            next_member = await self._store.oldest_waiting_member(queue_id)
            if next_member is None:
                return OperationResult.ok(None, NO_ONE_WAITING)

            won = await self._store.transition_member(next_member.id, queue_id, MemberStatus.SERVED)
        except StoreError as e:
            return OperationResult.fail(str(e))

        if not won:
            logger.info("Lost the race to serve %s in %s", next_member.id, queue_id)
            await self._refresh()
            return OperationResult.ok(None, NO_ONE_WAITING)

        logger.info("Served %s in %s", next_member.display_name, queue_id)
        await self._refresh()
        return OperationResult.ok(next_member.model_copy(update={"status": MemberStatus.SERVED}))

    async def remove_person(self, queue_id: str, member_id: UUID) -> OperationResult[None]:
        """Remove a waiting member. Removing someone who is not waiting is a no-op."""
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)
        queue_id = normalize_queue_code(queue_id)

        try:
            _queue, error = await self._hosted_queue(queue_id, session)
            if error:
                return OperationResult.fail(error)
            won = await self._store.transition_member(member_id, queue_id, MemberStatus.REMOVED)
        except StoreError as e:
            return OperationResult.fail(str(e))

        await self._refresh()
        return OperationResult.ok(message=None if won else NOT_WAITING)

    async def end_queue(self, queue_id: str) -> OperationResult[None]:
        """
        Deactivate a queue and close everyone still waiting.

        By default this is two writes. If the second one fails the queue
        stays inactive (no rollback) and the failure is logged and
        reported; active-queue filtering hides the leftover waiters from
        snapshots. With `atomic_end_queue` both happen in one transaction.
        """
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)
        queue_id = normalize_queue_code(queue_id)

        try:
            _queue, error = await self._hosted_queue(queue_id, session)
            if error:
                return OperationResult.fail(error)

            if self._settings.atomic_end_queue:
                _changed, closed = await self._store.end_queue_atomic(queue_id)
            else:
                await self._store.deactivate_queue(queue_id)
                try:
                    closed = await self._store.close_waiting_members(queue_id)
                except StoreError as e:
                    logger.error("Queue %s ended but closing its waiters failed: %s", queue_id, e)
                    await self._refresh()
                    return OperationResult.fail(str(e))
        except StoreError as e:
            return OperationResult.fail(str(e))

        logger.info("Queue %s ended, %s waiting closed", queue_id, closed)
        await self._refresh()
        return OperationResult.ok()

    # =========================================================================
    # Customer operations
    # =========================================================================

    async def join_queue(
        self,
        queue_id: str,
        name: str,
        contact_info: Optional[str] = None,
    ) -> OperationResult[MemberRecord]:
        """Add the current user to the end of a queue."""
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)

        clean_name = (name or "").strip()
        if not clean_name:
            return OperationResult.fail(NAME_REQUIRED)
        queue_id = normalize_queue_code(queue_id)

        try:
            queue = await self._store.get_queue(queue_id)
            if queue is None or not queue.is_active:
                return OperationResult.fail(QUEUE_NOT_ACTIVE)

            if await self._store.find_waiting_member_by_name(queue_id, clean_name):
                return OperationResult.fail(NAME_TAKEN)

            if await self._store.find_waiting_member_for_user(queue_id, session.user_id):
                return OperationResult.fail(ALREADY_IN_QUEUE)

            member = await self._store.insert_member(
                queue_id=queue_id,
                user_id=session.user_id,
                display_name=clean_name,
                contact_info=_clean(contact_info),
            )
        except DuplicateMembership as e:
            # Another join slipped past the checks above; the index caught it
            return OperationResult.fail(NAME_TAKEN if e.field == "display_name" else ALREADY_IN_QUEUE)
        except StoreError as e:
            return OperationResult.fail(str(e))

        logger.info("%s joined %s", clean_name, queue_id)
        await self._refresh()
        return OperationResult.ok(member)

    async def leave_queue(self, queue_id: str, member_id: UUID) -> OperationResult[None]:
        """Leave a queue. Leaving twice is the same as leaving once."""
        session = self._session()
        if session is None:
            return OperationResult.fail(NOT_SIGNED_IN)
        queue_id = normalize_queue_code(queue_id)

        try:
            member = await self._store.get_member(member_id)
            if member is not None and member.user_id != session.user_id:
                return OperationResult.fail(NOT_YOUR_PLACE)
            won = await self._store.transition_member(member_id, queue_id, MemberStatus.LEFT)
        except StoreError as e:
            return OperationResult.fail(str(e))

        await self._refresh()
        return OperationResult.ok(message=None if won else NOT_WAITING)

    async def leave_current_queue(self) -> OperationResult[None]:
        """Leave whatever queue the snapshot says we are waiting in."""
        member = self._engine.current_member
        if member is None:
            return OperationResult.ok(message=NOT_IN_QUEUE)
        return await self.leave_queue(member.queue_id, member.id)

    def get_queue_by_id(self, queue_id: str) -> Optional[QueueView]:
        return self._engine.get_queue_by_id(normalize_queue_code(queue_id))
