"""
Pydantic schemas for queues and their members.

Rows coming out of the database are validated here, once, before they
reach the sync engine or the views. An unknown status string fails at this
boundary instead of somewhere in the roster code.
"""

from datetime import datetime
from typing import Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from waitline.models.queue_member import MemberStatus

T = TypeVar("T")


# Store records

class MemberRecord(BaseModel):
    """A queue_members row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    queue_id: str
    user_id: UUID
    display_name: str
    contact_info: Optional[str] = None
    joined_at: datetime
    status: MemberStatus


class QueueRecord(BaseModel):
    """A queues row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    host_user_id: UUID
    name: str
    description: Optional[str] = None
    location: Optional[str] = None
    time_per_person: int = Field(..., gt=0)
    is_active: bool
    created_at: datetime


# Derived views

class QueueView(QueueRecord):
    """A queue with its waiting members in serving order."""
    people: tuple[MemberRecord, ...] = ()


class SnapshotView(BaseModel):
    """Everything one identity sees at a point in time."""
    model_config = ConfigDict(frozen=True)

    version: int = 0
    queues: tuple[QueueView, ...] = ()
    active_host_queue: Optional[QueueView] = None
    current_queue: Optional[QueueView] = None
    current_member: Optional[MemberRecord] = None
    user_position: Optional[int] = None
    is_loading: bool = False
    error_message: Optional[str] = None


class PositionStatus(BaseModel):
    """The caller's place in their current queue."""
    queue: QueueView
    member: MemberRecord
    position: int
    people_ahead: int
    estimated_wait_minutes: int
    estimated_turn_time: str  # HH:MM in the display timezone


class OperationResult(BaseModel, Generic[T]):
    """Outcome of a public operation: data on success, a reason otherwise."""
    success: bool
    message: Optional[str] = None
    data: Optional[T] = None

    @classmethod
    def ok(cls, data: Optional[T] = None, message: Optional[str] = None) -> "OperationResult[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, message: str) -> "OperationResult[T]":
        return cls(success=False, message=message)


# Request bodies

class QueueCreate(BaseModel):
    """Schema for creating a queue."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=255)
    time_per_person: Optional[int] = None


class QueueUpdate(BaseModel):
    """Schema for updating a queue (all fields optional)."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=255)
    time_per_person: Optional[int] = None


class JoinRequest(BaseModel):
    """Schema for joining a queue."""
    name: str = Field(..., max_length=100)
    contact_info: Optional[str] = None
