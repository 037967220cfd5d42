"""Queue model - a waiting line owned by a host, identified by a short code."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.database import Base
from waitline.utils.timezone import utc_now_naive

TIME_PER_PERSON_CHECK = "ck_queues_time_per_person_positive"


class Queue(Base):
    """
    A virtual waiting line.

    The id is the code customers type (or scan) to join, so it is short,
    uppercase and never changes. `is_active` goes from True to False exactly
    once, when the host ends the queue.
    """

    __tablename__ = "queues"
    __table_args__ = (
        CheckConstraint("time_per_person > 0", name=TIME_PER_PERSON_CHECK),
    )

    id: Mapped[str] = mapped_column(String(8), primary_key=True)
    host_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Display metadata (host editable)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(255))

    # Minutes per person, used for wait estimates
    time_per_person: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now_naive,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Queue {self.id} {self.name!r} ({'active' if self.is_active else 'ended'})>"
