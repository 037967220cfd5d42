"""QueueMember model - one person's entry in a queue."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.database import Base
from waitline.utils.timezone import utc_now_naive


class MemberStatus(str, Enum):
    """
    Lifecycle of a queue entry.

    WAITING is the only non-terminal state. Every other state is reached
    from WAITING and never left again.
    """
    WAITING = "waiting"
    SERVED = "served"    # Called by the host
    REMOVED = "removed"  # Removed by the host
    LEFT = "left"        # Left voluntarily
    CLOSED = "closed"    # Queue was ended while waiting

    @property
    def is_terminal(self) -> bool:
        return self is not MemberStatus.WAITING


class QueueMember(Base):
    """
    A person's entry in a queue.

    Serving order is `joined_at` ascending among WAITING members; entries
    are never reordered. A user may have several historical entries in the
    same queue but at most one WAITING one.
    """

    __tablename__ = "queue_members"
    __table_args__ = (
        Index("ix_queue_members_queue_status_joined", "queue_id", "status", "joined_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    queue_id: Mapped[str] = mapped_column(
        String(8),
        ForeignKey("queues.id"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_info: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(20),
        default=MemberStatus.WAITING.value,
        nullable=False,
    )

    # Timing
    joined_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now_naive,
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<QueueMember {self.display_name!r} in {self.queue_id} - {self.status}>"
