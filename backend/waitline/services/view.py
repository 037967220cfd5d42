"""
View derivation - positions, rosters and wait estimates.

Pure functions over a snapshot. The host's roster and a customer's
position are both read from `QueueView.people`, which the sync engine
keeps in `joined_at` order, so the two views cannot disagree.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from waitline.schemas.queue import MemberRecord, QueueView, SnapshotView
from waitline.utils.timezone import format_local_time, utc_now


def roster_of(queue: QueueView) -> tuple[MemberRecord, ...]:
    """Waiting members in serving order."""
    return queue.people


def position_of(queue: Optional[QueueView], member_id: Optional[UUID]) -> Optional[int]:
    """1-based place in line, or None if the member is not waiting there."""
    if queue is None or member_id is None:
        return None
    for index, person in enumerate(roster_of(queue)):
        if person.id == member_id:
            return index + 1
    return None


def estimated_wait_minutes(position: Optional[int], time_per_person: int) -> int:
    """Minutes until the member at `position` is called."""
    if not position or position < 1:
        return 0
    return max(0, (position - 1) * time_per_person)


def people_ahead(queue: QueueView, member_id: UUID) -> tuple[MemberRecord, ...]:
    """Members who will be called before `member_id`."""
    position = position_of(queue, member_id)
    if position is None:
        return ()
    return roster_of(queue)[: position - 1]


def total_wait_minutes(queue: QueueView) -> int:
    """How long someone joining now would wait."""
    return len(queue.people) * queue.time_per_person


def estimated_turn_time(
    position: Optional[int],
    time_per_person: int,
    now: Optional[datetime] = None,
) -> datetime:
    """When the member at `position` can expect to be called (UTC)."""
    now = now or utc_now()
    return now + timedelta(minutes=estimated_wait_minutes(position, time_per_person))


def format_turn_time(
    position: Optional[int],
    time_per_person: int,
    timezone: str = "UTC",
    now: Optional[datetime] = None,
) -> str:
    """Expected call time as HH:MM in `timezone`."""
    return format_local_time(estimated_turn_time(position, time_per_person, now), timezone)


def user_position(snapshot: SnapshotView) -> Optional[int]:
    """Position of the snapshot owner in their current queue."""
    if snapshot.current_member is None:
        return None
    return position_of(snapshot.current_queue, snapshot.current_member.id)


def search_queues(
    queues: Iterable[QueueView],
    company: str = "",
    location: str = "",
) -> list[QueueView]:
    """
    Filter queues by name and location (case-insensitive substring),
    shortest line first.
    """
    company_query = company.strip().lower()
    location_query = location.strip().lower()

    matches = []
    for queue in queues:
        if company_query and company_query not in queue.name.lower():
            continue
        if location_query and location_query not in (queue.location or "").lower():
            continue
        matches.append(queue)

    # sorted() is stable, so equal lengths keep the snapshot order
    return sorted(matches, key=lambda q: len(q.people))
