"""
Session registry - one live sync engine and queue service per identity.

Every bearer token maps to a user id; requests from the same user share
one engine, so there is exactly one change subscription per user no matter
how many requests or WebSocket connections they have open.

A context lives while someone uses it. Live WebSocket connections hold it
open (`attach` / `detach`); the last `detach` tears it down. Contexts used
only by plain HTTP requests are closed by `evict_idle` once they have not
been touched for `session_idle_seconds`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from waitline.auth.identity import Session, StaticIdentityProvider
from waitline.config import Settings, get_settings
from waitline.services.queue_service import QueueService
from waitline.services.queue_store import QueueStore
from waitline.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class QueueContext:
    """What one identity works with."""
    session: Session
    engine: SyncEngine
    service: QueueService
    connections: int = 0
    last_used: float = field(default=0.0)


class SessionRegistry:
    def __init__(
        self,
        store: QueueStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._contexts: dict[UUID, QueueContext] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._contexts)

    async def get(self, session: Session) -> QueueContext:
        """Return the context for `session`, starting it on first use."""
        async with self._lock:
            context = self._contexts.get(session.user_id)
            if context is not None:
                context.last_used = self._clock()
                return context

            identity = StaticIdentityProvider(session)
            engine = SyncEngine(self._store, identity)
            service = QueueService(self._store, engine, identity, settings=self._settings)
            context = QueueContext(session=session, engine=engine, service=service, last_used=self._clock())
            self._contexts[session.user_id] = context

        await engine.start()
        logger.info("Started queue sync for %s", session.user_id)
        return context

    async def attach(self, session: Session) -> QueueContext:
        """Like `get`, but keeps the context open until `detach`."""
        context = await self.get(session)
        context.connections += 1
        return context

    async def detach(self, user_id: UUID) -> None:
        """Release one `attach`; the last one closes the context."""
        context = self._contexts.get(user_id)
        if context is None:
            return
        context.connections = max(0, context.connections - 1)
        context.last_used = self._clock()
        if context.connections == 0:
            await self.close(user_id)

    async def close(self, user_id: UUID) -> None:
        async with self._lock:
            context = self._contexts.pop(user_id, None)
        if context is not None:
            await context.engine.stop()
            logger.info("Stopped queue sync for %s", user_id)

    async def close_all(self) -> None:
        for user_id in list(self._contexts):
            await self.close(user_id)

    async def evict_idle(self, max_idle: Optional[float] = None) -> int:
        """Close contexts with no live connection that sat unused for `max_idle` seconds."""
        if max_idle is None:
            max_idle = self._settings.session_idle_seconds
        now = self._clock()
        idle = [
            user_id
            for user_id, context in self._contexts.items()
            if context.connections == 0 and now - context.last_used >= max_idle
        ]
        for user_id in idle:
            await self.close(user_id)
        if idle:
            logger.info("Evicted %s idle queue contexts", len(idle))
        return len(idle)

    async def run_eviction(self, interval: Optional[float] = None) -> None:
        """Sweep idle contexts forever; cancelled on shutdown."""
        if interval is None:
            interval = self._settings.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("Idle context sweep failed")
