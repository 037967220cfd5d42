"""
Queue API endpoints.

Thin HTTP layer over the calling user's QueueService and SyncEngine.
Failed operations come back as 400 with the human readable reason.
"""

import asyncio
import contextlib
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from waitline.auth.dependencies import get_queue_context
from waitline.auth.jwt import decode_access_token
from waitline.config import get_settings
from waitline.schemas.queue import (
    JoinRequest,
    MemberRecord,
    OperationResult,
    PositionStatus,
    QueueCreate,
    QueueRecord,
    QueueUpdate,
    QueueView,
    SnapshotView,
)
from waitline.services.session_registry import QueueContext
from waitline.services.view import estimated_wait_minutes, format_turn_time, search_queues

logger = logging.getLogger(__name__)

router = APIRouter()


def _unwrap(result: OperationResult):
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)
    return result


# =============================================================================
# Snapshot
# =============================================================================

@router.get("", response_model=SnapshotView)
async def get_snapshot(
    refresh: bool = False,
    context: QueueContext = Depends(get_queue_context),
):
    """
    Everything the caller sees: active queues, the queue they host, the
    queue they wait in and their position.
    """
    if refresh:
        await context.engine.refresh(show_loader=True)
    return context.engine.snapshot


@router.get("/search", response_model=list[QueueView])
async def search(
    company: str = "",
    location: str = "",
    context: QueueContext = Depends(get_queue_context),
):
    """Active queues matching name/location, shortest line first."""
    return search_queues(context.engine.queues, company=company, location=location)


@router.get("/current", response_model=PositionStatus)
async def get_current_position(context: QueueContext = Depends(get_queue_context)):
    """Where the caller stands in the queue they are waiting in."""
    engine = context.engine
    if engine.current_queue is None or engine.user_position is None:
        raise HTTPException(status_code=404, detail="You are not in a queue.")

    queue = engine.current_queue
    position = engine.user_position
    return PositionStatus(
        queue=queue,
        member=engine.current_member,
        position=position,
        people_ahead=position - 1,
        estimated_wait_minutes=estimated_wait_minutes(position, queue.time_per_person),
        estimated_turn_time=format_turn_time(position, queue.time_per_person, get_settings().display_timezone),
    )


@router.post("/current/leave", response_model=OperationResult[None])
async def leave_current_queue(context: QueueContext = Depends(get_queue_context)):
    """Leave the queue the caller is currently waiting in."""
    return _unwrap(await context.service.leave_current_queue())


@router.websocket("/live")
async def live_snapshot(websocket: WebSocket, token: str = Query(...)):
    """
    Push the caller's snapshot every time it changes.

    Authenticates with `?token=` because browsers cannot set headers on
    WebSocket requests.
    """
    session = decode_access_token(token)
    if session is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    registry = websocket.app.state.registry
    context = await registry.attach(session)

    updates: asyncio.Queue[SnapshotView] = asyncio.Queue()
    remove_listener = context.engine.add_listener(updates.put_nowait)
    updates.put_nowait(context.engine.snapshot)

    async def forward() -> None:
        while True:
            snapshot = await updates.get()
            await websocket.send_json(snapshot.model_dump(mode="json"))

    forward_task = asyncio.create_task(forward())
    try:
        while True:
            # Client messages are ignored; this only notices disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live snapshot client %s disconnected", session.user_id)
    finally:
        remove_listener()
        forward_task.cancel()
        with contextlib.suppress(Exception, asyncio.CancelledError):
            await forward_task
        await registry.detach(session.user_id)


# =============================================================================
# Queues
# =============================================================================

@router.post("", response_model=OperationResult[QueueView], status_code=status.HTTP_201_CREATED)
async def create_queue(
    data: QueueCreate,
    context: QueueContext = Depends(get_queue_context),
):
    """Create a queue hosted by the caller."""
    return _unwrap(
        await context.service.create_queue(
            name=data.name,
            description=data.description,
            location=data.location,
            time_per_person=data.time_per_person,
        )
    )


@router.get("/{code}", response_model=QueueView)
async def get_queue(
    code: str,
    context: QueueContext = Depends(get_queue_context),
):
    """An active queue from the caller's snapshot."""
    queue = context.service.get_queue_by_id(code)
    if queue is None:
        raise HTTPException(status_code=404, detail="Queue not found")
    return queue


@router.patch("/{code}", response_model=OperationResult[QueueRecord])
async def update_queue(
    code: str,
    data: QueueUpdate,
    context: QueueContext = Depends(get_queue_context),
):
    """Edit name, description, location or time per person (host only)."""
    return _unwrap(
        await context.service.update_queue(
            code,
            name=data.name,
            description=data.description,
            location=data.location,
            time_per_person=data.time_per_person,
        )
    )


@router.post("/{code}/join", response_model=OperationResult[MemberRecord], status_code=status.HTTP_201_CREATED)
async def join_queue(
    code: str,
    data: JoinRequest,
    context: QueueContext = Depends(get_queue_context),
):
    """Join the end of a queue."""
    return _unwrap(await context.service.join_queue(code, data.name, data.contact_info))


@router.post("/{code}/call-next", response_model=OperationResult[Optional[MemberRecord]])
async def call_next(
    code: str,
    context: QueueContext = Depends(get_queue_context),
):
    """Serve the person at the head of the line. `data` is null if nobody is waiting."""
    return _unwrap(await context.service.call_next(code))


@router.post("/{code}/end", response_model=OperationResult[None])
async def end_queue(
    code: str,
    context: QueueContext = Depends(get_queue_context),
):
    """End the queue; everyone still waiting is closed out."""
    return _unwrap(await context.service.end_queue(code))


@router.post("/{code}/members/{member_id}/remove", response_model=OperationResult[None])
async def remove_person(
    code: str,
    member_id: UUID,
    context: QueueContext = Depends(get_queue_context),
):
    """Remove someone from the line (host only)."""
    return _unwrap(await context.service.remove_person(code, member_id))


@router.post("/{code}/members/{member_id}/leave", response_model=OperationResult[None])
async def leave_queue(
    code: str,
    member_id: UUID,
    context: QueueContext = Depends(get_queue_context),
):
    """Leave a queue."""
    return _unwrap(await context.service.leave_queue(code, member_id))
