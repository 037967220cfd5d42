import asyncio
import itertools
import uuid

import pytest

from waitline.models import MemberStatus
from waitline.services import queue_service as messages
from waitline.services.errors import StoreError
from waitline.services.queue_store import INVALID_ROW_MESSAGE, QueueStore
from waitline.services.view import estimated_wait_minutes, position_of

from conftest import write_unchecked


class RacingReadStore(QueueStore):
    """Makes two callers read the head of the line before either updates it."""

    readers = 2

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._reads = 0
        self._all_read = asyncio.Event()

    async def oldest_waiting_member(self, queue_id):
        member = await super().oldest_waiting_member(queue_id)
        self._reads += 1
        if self._reads >= self.readers:
            self._all_read.set()
        await self._all_read.wait()
        return member


class BlindJoinStore(QueueStore):
    """Advisory duplicate checks always pass, as if a concurrent join raced them."""

    async def find_waiting_member_by_name(self, queue_id, display_name):
        return None

    async def find_waiting_member_for_user(self, queue_id, user_id):
        return None


class BrokenCloseStore(QueueStore):
    async def close_waiting_members(self, queue_id):
        raise StoreError("connection reset")


# =============================================================================
# create_queue
# =============================================================================

async def test_create_queue_defaults(host):
    result = await host.service.create_queue()
    assert result.success
    assert result.data.name == messages.DEFAULT_QUEUE_NAME
    assert result.data.time_per_person == 5
    assert result.data.is_active is True
    assert result.data.host_user_id == host.session.user_id


async def test_create_queue_trims_and_blanks_optional_fields(host):
    result = await host.service.create_queue(name="  Bakery ", description="   ", location=" Main St ")
    assert result.data.name == "Bakery"
    assert result.data.description is None
    assert result.data.location == "Main St"


@pytest.mark.parametrize("kwargs, message", [
    ({"name": "   "}, messages.QUEUE_NAME_REQUIRED),
    ({"name": "Bakery", "time_per_person": 0}, messages.INVALID_TIME_PER_PERSON),
    ({"name": "Bakery", "time_per_person": -3}, messages.INVALID_TIME_PER_PERSON),
])
async def test_create_queue_validation(host, store, kwargs, message):
    result = await host.service.create_queue(**kwargs)
    assert not result.success
    assert result.message == message
    assert await store.list_active_queues() == []


async def test_create_queue_retries_code_collisions(make_actor, store):
    await store.insert_queue(
        queue_id="AAAA", host_user_id=uuid.uuid4(), name="Taken",
        description=None, location=None, time_per_person=5,
    )
    codes = iter(["AAAA"] * 4 + ["BBBB"])
    host = await make_actor("host", code_factory=lambda: next(codes))

    result = await host.service.create_queue(name="Bakery")

    assert result.success
    assert result.data.id == "BBBB"


async def test_create_queue_gives_up_after_max_attempts(make_actor, store):
    await store.insert_queue(
        queue_id="AAAA", host_user_id=uuid.uuid4(), name="Taken",
        description=None, location=None, time_per_person=5,
    )
    calls = itertools.count(1)

    def always_taken():
        next(calls)
        return "AAAA"

    host = await make_actor("host", code_factory=always_taken)
    result = await host.service.create_queue(name="Bakery")

    assert not result.success
    assert result.message == messages.CODE_EXHAUSTED
    assert next(calls) == 6  # five attempts were made


# =============================================================================
# join / position scenario
# =============================================================================

async def test_join_call_next_scenario(host, bakery, make_actor):
    a = await make_actor("a")
    b = await make_actor("b")

    joined_a = await a.service.join_queue(bakery.id, "A")
    assert a.engine.user_position == 1
    assert estimated_wait_minutes(a.engine.user_position, bakery.time_per_person) == 0

    await b.service.join_queue(bakery.id, "B")
    await a.engine.refresh()
    assert a.engine.user_position == 1
    assert b.engine.user_position == 2
    assert estimated_wait_minutes(b.engine.user_position, bakery.time_per_person) == bakery.time_per_person

    served = await host.service.call_next(bakery.id)
    assert served.data.id == joined_a.data.id
    assert served.data.status is MemberStatus.SERVED

    await b.engine.refresh()
    assert b.engine.user_position == 1
    assert estimated_wait_minutes(b.engine.user_position, bakery.time_per_person) == 0


async def test_host_roster_matches_customer_positions(host, bakery, make_actor):
    customers = [await make_actor(name) for name in ("alex", "sam", "jordan")]
    for customer in customers:
        await customer.service.join_queue(bakery.id, customer.session.email.split("@")[0])

    await host.engine.refresh()
    roster = host.engine.active_host_queue.people
    for customer in customers:
        await customer.engine.refresh()
        member = customer.engine.current_member
        assert roster[customer.engine.user_position - 1].id == member.id
        assert position_of(host.engine.active_host_queue, member.id) == customer.engine.user_position


async def test_join_twice_with_same_identity(bakery, make_actor):
    alex = await make_actor("alex")
    assert (await alex.service.join_queue(bakery.id, "Alex")).success

    again = await alex.service.join_queue(bakery.id, "Alex B")
    assert not again.success
    assert again.message == messages.ALREADY_IN_QUEUE


async def test_join_with_taken_name_any_case(bakery, make_actor):
    alex = await make_actor("alex")
    other = await make_actor("other")
    await alex.service.join_queue(bakery.id, "Alex")

    result = await other.service.join_queue(bakery.id, "  ALEX ")
    assert not result.success
    assert result.message == messages.NAME_TAKEN


async def test_join_accepts_lowercase_code(bakery, make_actor):
    alex = await make_actor("alex")
    result = await alex.service.join_queue(bakery.id.lower(), "Alex", contact_info="  ")
    assert result.success
    assert result.data.queue_id == bakery.id
    assert result.data.contact_info is None


@pytest.mark.parametrize("code", ["NOPE", ""])
async def test_join_unknown_queue(make_actor, code):
    alex = await make_actor("alex")
    result = await alex.service.join_queue(code, "Alex")
    assert not result.success
    assert result.message == messages.QUEUE_NOT_ACTIVE


async def test_join_requires_name(bakery, make_actor):
    alex = await make_actor("alex")
    result = await alex.service.join_queue(bakery.id, "   ")
    assert result.message == messages.NAME_REQUIRED


async def test_signed_out_user_cannot_join(bakery, make_actor):
    alex = await make_actor("alex")
    alex.identity.sign_out()
    await alex.engine.settle()

    result = await alex.service.join_queue(bakery.id, "Alex")
    assert result.message == messages.NOT_SIGNED_IN


@pytest.mark.parametrize("store_class", [BlindJoinStore])
async def test_racing_join_is_caught_by_unique_index(bakery, make_actor, store):
    alex = await make_actor("alex")
    await alex.service.join_queue(bakery.id, "Alex")

    again = await alex.service.join_queue(bakery.id, "Alexander")
    assert again.message == messages.ALREADY_IN_QUEUE

    other = await make_actor("other")
    clash = await other.service.join_queue(bakery.id, "alex")
    assert clash.message == messages.NAME_TAKEN

    assert len(await store.list_waiting_members([bakery.id])) == 1


@pytest.mark.parametrize("store_class, enforce_uniqueness", [(BlindJoinStore, False)])
async def test_racing_join_without_index_admits_duplicate(bakery, make_actor, store):
    alex = await make_actor("alex")
    await alex.service.join_queue(bakery.id, "Alex")
    again = await alex.service.join_queue(bakery.id, "Alexander")

    # Advisory checks only: the race is accepted
    assert again.success
    assert len(await store.list_waiting_members([bakery.id])) == 2


# =============================================================================
# call_next
# =============================================================================

async def test_call_next_on_empty_queue(host, bakery):
    result = await host.service.call_next(bakery.id)
    assert result.success
    assert result.data is None
    assert result.message == messages.NO_ONE_WAITING


@pytest.mark.parametrize("store_class", [RacingReadStore])
async def test_concurrent_call_next_serves_once(host, bakery, make_actor, store):
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")
    tablet = await make_actor("host")  # same host on a second device

    results = await asyncio.gather(
        host.service.call_next(bakery.id),
        tablet.service.call_next(bakery.id),
    )

    assert all(r.success for r in results)
    assert sum(r.data is not None for r in results) == 1
    assert [r.message for r in results if r.data is None] == [messages.NO_ONE_WAITING]
    assert (await store.get_member(joined.data.id)).status is MemberStatus.SERVED


async def test_only_host_can_call_next(bakery, make_actor):
    alex = await make_actor("alex")
    result = await alex.service.call_next(bakery.id)
    assert not result.success
    assert result.message == messages.NOT_HOST


# =============================================================================
# remove / leave
# =============================================================================

async def test_remove_person_is_idempotent(host, bakery, make_actor, store):
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")

    first = await host.service.remove_person(bakery.id, joined.data.id)
    second = await host.service.remove_person(bakery.id, joined.data.id)

    assert first.success and first.message is None
    assert second.success and second.message == messages.NOT_WAITING
    assert (await store.get_member(joined.data.id)).status is MemberStatus.REMOVED
    assert host.engine.active_host_queue.people == ()


async def test_leave_queue_is_idempotent(bakery, make_actor, store):
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")

    assert (await alex.service.leave_queue(bakery.id, joined.data.id)).success
    assert (await alex.service.leave_queue(bakery.id, joined.data.id)).success
    assert (await store.get_member(joined.data.id)).status is MemberStatus.LEFT
    assert alex.engine.current_member is None


async def test_cannot_leave_for_someone_else(bakery, make_actor):
    alex = await make_actor("alex")
    sam = await make_actor("sam")
    joined = await alex.service.join_queue(bakery.id, "Alex")

    result = await sam.service.leave_queue(bakery.id, joined.data.id)
    assert result.message == messages.NOT_YOUR_PLACE


async def test_leave_current_queue(bakery, make_actor):
    alex = await make_actor("alex")
    await alex.service.join_queue(bakery.id, "Alex")

    assert (await alex.service.leave_current_queue()).success
    assert alex.engine.current_queue is None

    nothing = await alex.service.leave_current_queue()
    assert nothing.success
    assert nothing.message == messages.NOT_IN_QUEUE


async def test_removed_member_cannot_be_served(host, bakery, make_actor):
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")
    await host.service.remove_person(bakery.id, joined.data.id)

    result = await host.service.call_next(bakery.id)
    assert result.data is None


# =============================================================================
# end_queue
# =============================================================================

async def test_end_queue_closes_waiters_and_blocks_joins(host, bakery, make_actor, store):
    alex = await make_actor("alex")
    sam = await make_actor("sam")
    a = await alex.service.join_queue(bakery.id, "Alex")
    s = await sam.service.join_queue(bakery.id, "Sam")

    result = await host.service.end_queue(bakery.id)
    assert result.success

    assert await store.get_queue(bakery.id) is not None
    assert (await store.get_queue(bakery.id)).is_active is False
    for joined in (a, s):
        assert (await store.get_member(joined.data.id)).status is MemberStatus.CLOSED

    late = await make_actor("late")
    refused = await late.service.join_queue(bakery.id, "Late")
    assert refused.message == messages.QUEUE_NOT_ACTIVE
    assert host.engine.active_host_queue is None


async def test_end_queue_atomic_setting(settings, make_actor, store):
    settings.atomic_end_queue = True
    host = await make_actor("host")
    queue = (await host.service.create_queue(name="Bakery")).data
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(queue.id, "Alex")

    assert (await host.service.end_queue(queue.id)).success
    assert (await store.get_queue(queue.id)).is_active is False
    assert (await store.get_member(joined.data.id)).status is MemberStatus.CLOSED


@pytest.mark.parametrize("store_class", [BrokenCloseStore])
async def test_end_queue_partial_failure_keeps_queue_inactive(host, bakery, make_actor, store):
    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")

    result = await host.service.end_queue(bakery.id)

    assert not result.success
    assert result.message == "connection reset"
    assert (await store.get_queue(bakery.id)).is_active is False
    # The waiter row is left behind but no snapshot shows the ended queue
    assert (await store.get_member(joined.data.id)).status is MemberStatus.WAITING
    await alex.engine.refresh()
    assert alex.engine.current_queue is None
    assert alex.engine.user_position is None


async def test_only_host_can_end_queue(bakery, make_actor):
    alex = await make_actor("alex")
    result = await alex.service.end_queue(bakery.id)
    assert result.message == messages.NOT_HOST


# =============================================================================
# update_queue
# =============================================================================

async def test_update_queue(host, bakery):
    result = await host.service.update_queue(bakery.id, name="Bread & Co", time_per_person=3)
    assert result.success
    assert result.data.name == "Bread & Co"
    assert host.engine.active_host_queue.time_per_person == 3


async def test_update_queue_rejected_for_non_host_and_ended_queue(host, bakery, make_actor):
    alex = await make_actor("alex")
    assert (await alex.service.update_queue(bakery.id, name="Mine")).message == messages.NOT_HOST

    await host.service.end_queue(bakery.id)
    result = await host.service.update_queue(bakery.id, name="Too late")
    assert result.message == messages.QUEUE_NOT_ACTIVE


# =============================================================================
# unreadable rows
# =============================================================================

async def test_unreadable_row_fails_operations_instead_of_raising(host, bakery, make_actor, db_engine):
    await write_unchecked(db_engine, f"UPDATE queues SET time_per_person = 0 WHERE id = '{bakery.id}'")

    refreshed = await host.engine.refresh()
    assert not refreshed.success
    assert refreshed.message == INVALID_ROW_MESSAGE
    assert host.engine.error_message == INVALID_ROW_MESSAGE
    assert host.engine.active_host_queue.id == bakery.id

    updated = await host.service.update_queue(bakery.id, name="Bread & Co")
    assert not updated.success
    assert updated.message == INVALID_ROW_MESSAGE

    alex = await make_actor("alex")
    joined = await alex.service.join_queue(bakery.id, "Alex")
    assert not joined.success
