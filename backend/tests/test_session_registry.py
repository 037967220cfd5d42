import asyncio
import contextlib

from waitline.auth.identity import Session
from waitline.services.session_registry import SessionRegistry

from conftest import make_session


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def test_registry_shares_one_context_per_user(store, settings):
    registry = SessionRegistry(store, settings)
    alex = make_session("alex")

    first = await registry.get(alex)
    second = await registry.get(Session(user_id=alex.user_id))
    assert first is second
    assert first.engine.is_subscribed
    assert len(registry) == 1

    await registry.close(alex.user_id)
    assert len(registry) == 0
    assert not first.engine.is_subscribed


async def test_last_live_connection_closes_context(store, settings):
    registry = SessionRegistry(store, settings)
    alex = make_session("alex")
    baseline = store.feed.subscriber_count

    context = await registry.attach(alex)
    await registry.attach(alex)  # second tab
    assert store.feed.subscriber_count == baseline + 1

    await registry.detach(alex.user_id)
    assert len(registry) == 1
    assert context.engine.is_subscribed

    await registry.detach(alex.user_id)
    assert len(registry) == 0
    assert store.feed.subscriber_count == baseline


async def test_idle_contexts_are_evicted(store, settings):
    clock = ManualClock()
    registry = SessionRegistry(store, settings, clock=clock)
    baseline = store.feed.subscriber_count

    idle = await registry.get(make_session("alex"))
    live = await registry.attach(make_session("sam"))
    clock.now = 100.0
    recent = await registry.get(make_session("jordan"))

    assert await registry.evict_idle(max_idle=60) == 1

    assert len(registry) == 2
    assert not idle.engine.is_subscribed
    assert live.engine.is_subscribed
    assert recent.engine.is_subscribed
    assert store.feed.subscriber_count == baseline + 2
    await registry.close_all()


async def test_using_a_context_keeps_it_alive(store, settings):
    clock = ManualClock()
    registry = SessionRegistry(store, settings, clock=clock)
    alex = make_session("alex")

    await registry.get(alex)
    clock.now = 50.0
    await registry.get(alex)
    clock.now = 100.0

    assert await registry.evict_idle(max_idle=60) == 0
    assert len(registry) == 1
    await registry.close_all()


async def test_many_visitors_do_not_pile_up_subscriptions(store, settings, host, bakery, make_actor):
    clock = ManualClock()
    registry = SessionRegistry(store, settings, clock=clock)
    baseline = store.feed.subscriber_count

    for i in range(20):
        await registry.get(make_session(f"visitor-{i}"))
    assert store.feed.subscriber_count == baseline + 20

    clock.now = settings.session_idle_seconds
    assert await registry.evict_idle() == 20
    assert store.feed.subscriber_count == baseline

    alex = await make_actor("alex")
    assert (await alex.service.join_queue(bakery.id, "Alex")).success


async def test_background_sweep_evicts(store, settings):
    clock = ManualClock()
    registry = SessionRegistry(store, settings, clock=clock)
    await registry.get(make_session("alex"))
    clock.now = 10_000.0

    sweep = asyncio.create_task(registry.run_eviction(interval=0.01))
    for _ in range(100):
        if len(registry) == 0:
            break
        await asyncio.sleep(0.01)
    sweep.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep

    assert len(registry) == 0
