"""
Seed the database with a demo queue and a few waiting customers.

Run with: python -m scripts.seed_data

Goes through the same QueueService the API uses, so the demo data obeys
the same rules (unique codes, unique waiting names, FIFO order).
"""

import asyncio
import uuid

from waitline.auth.identity import InMemoryIdentityProvider, Session
from waitline.auth.jwt import create_access_token
from waitline.config import get_settings
from waitline.database import build_engine, build_session_maker, init_db
from waitline.services.queue_service import QueueService
from waitline.services.queue_store import QueueStore
from waitline.services.sync_engine import SyncEngine
from waitline.services.view import estimated_wait_minutes, format_turn_time, position_of

DEMO_HOST = Session(user_id=uuid.UUID("00000000-0000-4000-8000-000000000001"), email="host@example.com")

DEMO_QUEUE = {
    "name": "Corner Bakery",
    "description": "Fresh bread every morning",
    "location": "Am Wriezener Bahnhof, 10243 Berlin, Germany",
    "time_per_person": 4,
}

DEMO_CUSTOMERS = [
    ("Alex", "alex@example.com"),
    ("Sam", None),
    ("Jordan", "+49 30 1234567"),
]


async def seed_demo_queue(store: QueueStore, timezone: str = "UTC") -> str:
    """Create the demo queue (if the host has none) and fill it."""
    identity = InMemoryIdentityProvider(DEMO_HOST)
    engine = SyncEngine(store, identity)
    service = QueueService(store, engine, identity)
    await engine.start()

    queue = engine.active_host_queue
    if queue:
        print(f"✓ Demo queue {queue.id} exists ({len(queue.people)} waiting)")
    else:
        result = await service.create_queue(**DEMO_QUEUE)
        if not result.success:
            raise RuntimeError(result.message)
        queue = result.data
        print(f"+ Created queue {queue.id}: {queue.name}")

    for name, contact in DEMO_CUSTOMERS:
        customer = InMemoryIdentityProvider(Session(user_id=uuid.uuid5(uuid.NAMESPACE_URL, f"waitline:{name}")))
        customer_engine = SyncEngine(store, customer)
        customer_service = QueueService(store, customer_engine, customer)
        joined = await customer_service.join_queue(queue.id, name, contact)
        if joined.success:
            print(f"  + {name} joined")
        else:
            print(f"  ✓ {name}: {joined.message}")

    await engine.refresh()
    hosted = engine.active_host_queue
    for person in hosted.people:
        position = position_of(hosted, person.id)
        wait = estimated_wait_minutes(position, hosted.time_per_person)
        around = format_turn_time(position, hosted.time_per_person, timezone)
        print(f"    #{position} {person.display_name} (~{wait} min, around {around})")

    await engine.stop()
    return queue.id


async def main():
    """Main entry point."""
    settings = get_settings()
    print("=" * 50)
    print("Seeding Waitline Database")
    print("=" * 50)

    print("\nInitializing database...")
    engine = build_engine(settings.async_database_url)
    await init_db(engine, enforce_waiting_uniqueness=settings.enforce_waiting_uniqueness)

    print("\nSeeding demo queue...")
    store = QueueStore(build_session_maker(engine))
    code = await seed_demo_queue(store, settings.display_timezone)
    await store.feed.drain()
    await engine.dispose()

    print(f"\n✓ Seed data complete! Queue code: {code}")
    print(f"Host token: {create_access_token(DEMO_HOST.user_id, DEMO_HOST.email)}")


if __name__ == "__main__":
    asyncio.run(main())
