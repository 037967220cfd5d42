# Database models
from waitline.models.queue import Queue
from waitline.models.queue_member import MemberStatus, QueueMember

__all__ = [
    "Queue",
    "QueueMember",
    "MemberStatus",
]
