import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from waitline.auth.identity import InMemoryIdentityProvider, Session
from waitline.config import Settings
from waitline.database import build_engine, build_session_maker, init_db
from waitline.services.change_feed import ChangeFeed
from waitline.services.queue_service import QueueService
from waitline.services.queue_store import QueueStore
from waitline.services.sync_engine import SyncEngine


class TickingClock:
    """Each call is one second after the previous one, so joined_at never ties."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@dataclass
class Actor:
    session: Session
    identity: InMemoryIdentityProvider
    engine: SyncEngine
    service: QueueService


def make_session(name: str) -> Session:
    return Session(user_id=uuid.uuid5(uuid.NAMESPACE_URL, f"test:{name}"), email=f"{name}@example.com")


async def write_unchecked(engine, statement: str) -> None:
    """Write rows the way a client unaware of the CHECK constraints could."""
    async with engine.begin() as conn:
        await conn.execute(text("PRAGMA ignore_check_constraints = ON"))
        try:
            await conn.execute(text(statement))
        finally:
            await conn.execute(text("PRAGMA ignore_check_constraints = OFF"))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        jwt_secret_key="test-secret",
        debug=False,
    )


@pytest.fixture
def enforce_uniqueness():
    return True


@pytest.fixture
async def db_engine(tmp_path, enforce_uniqueness):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'waitline.db'}")
    await init_db(engine, enforce_waiting_uniqueness=enforce_uniqueness)
    yield engine
    await engine.dispose()


@pytest.fixture
def store_class():
    return QueueStore


@pytest.fixture
async def store(db_engine, store_class):
    store = store_class(build_session_maker(db_engine), ChangeFeed(), clock=TickingClock())
    yield store
    await store.feed.drain()


@pytest.fixture
async def make_actor(store, settings):
    """Build signed-in identities with their own engine and service."""
    actors: list[Actor] = []

    async def factory(name: str, start: bool = True, **service_kwargs) -> Actor:
        session = make_session(name)
        identity = InMemoryIdentityProvider(session)
        engine = SyncEngine(store, identity)
        service = QueueService(store, engine, identity, settings=settings, **service_kwargs)
        if start:
            await engine.start()
        actor = Actor(session=session, identity=identity, engine=engine, service=service)
        actors.append(actor)
        return actor

    yield factory

    for actor in actors:
        await actor.engine.stop()
    await store.feed.drain()


@pytest.fixture
async def host(make_actor):
    return await make_actor("host")


@pytest.fixture
async def bakery(host):
    result = await host.service.create_queue(name="Bakery", time_per_person=5)
    assert result.success
    return result.data
