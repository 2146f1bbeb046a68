from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from refsync.errors import FetchError, ResolveError, StoreError
from refsync.events import UpdateChannel
from refsync.models import CacheView, DataDomain, Tier
from refsync.planner import plan
from refsync.reader import CacheReader, ReferenceDataCache
from refsync.store import InMemoryDocumentStore, WriteOp
from refsync.writer import ShardWriter, metadata_path, shard_path

from conftest import T0, FakeClock, FakeSource, make_records


def _seed_shards(store, domain, records, embed=False):
    writer = ShardWriter(store, embed_fallback_data=embed, clock=FakeClock())
    writer.write(domain, plan(records, 700_000, 500))


def _seed_fallback(store, domain, records, **stamps):
    store.commit([WriteOp.merge(metadata_path(domain), dict(stamps, data=records))])


@pytest.mark.asyncio
async def test_sharded_tier_wins_over_fallback_and_live(store):
    shard_records = make_records(1200, "item")
    _seed_fallback(store, DataDomain.ITEMS, [{"id": "legacy"}], lastUpdated="2025-01-01T00:00:00Z")
    _seed_shards(store, DataDomain.ITEMS, shard_records)
    source = FakeSource({DataDomain.ITEMS: make_records(1, "live")})

    view = await CacheReader(store, source).resolve(DataDomain.ITEMS)

    assert view.tier == Tier.SHARDED
    assert view.records == shard_records
    assert view.as_of == T0
    assert source.calls == []


@pytest.mark.asyncio
async def test_fallback_tier_used_without_shards(store):
    _seed_fallback(store, DataDomain.TASKS, [{"id": "legacy"}], lastUpdated="2025-01-01T00:00:00Z")
    source = FakeSource({DataDomain.TASKS: make_records(1, "live")})

    view = await CacheReader(store, source).resolve(DataDomain.TASKS)

    assert view.tier == Tier.FALLBACK_DOC
    assert view.records == [{"id": "legacy"}]
    assert view.as_of == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert source.calls == []


@pytest.mark.asyncio
async def test_fallback_prefers_data_timestamp_over_last_updated(store):
    _seed_fallback(
        store,
        DataDomain.TASKS,
        [{"id": "a"}],
        dataUpdatedAt="2026-02-01T00:00:00+00:00",
        lastUpdated="2025-01-01T00:00:00+00:00",
    )

    view = await CacheReader(store, FakeSource()).resolve(DataDomain.TASKS)

    assert view.as_of == datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_missing_shard_falls_through_to_fallback(store):
    _seed_fallback(store, DataDomain.ITEMS, [{"id": "legacy"}], lastUpdated="2025-01-01T00:00:00Z")
    _seed_shards(store, DataDomain.ITEMS, make_records(1200, "item"))
    store.commit([WriteOp.delete(shard_path(DataDomain.ITEMS, "001"))])

    view = await CacheReader(store, FakeSource()).resolve(DataDomain.ITEMS)

    assert view.tier == Tier.FALLBACK_DOC


@pytest.mark.asyncio
async def test_shard_from_another_generation_falls_through(store):
    _seed_fallback(store, DataDomain.ITEMS, [{"id": "legacy"}], lastUpdated="2025-01-01T00:00:00Z")
    _seed_shards(store, DataDomain.ITEMS, make_records(1200, "item"))
    foreign = {"data": [{"id": "other"}], "updatedAt": "2026-01-01T12:00:00Z", "generation": "other"}
    store.commit([WriteOp.set(shard_path(DataDomain.ITEMS, "002"), foreign)])

    view = await CacheReader(store, FakeSource()).resolve(DataDomain.ITEMS)

    assert view.tier == Tier.FALLBACK_DOC
    assert view.records == [{"id": "legacy"}]


@pytest.mark.asyncio
async def test_inconsistent_metadata_is_ignored(store):
    _seed_shards(store, DataDomain.ITEMS, make_records(1200, "item"))
    store.commit([WriteOp.merge(metadata_path(DataDomain.ITEMS), {"shardCount": 5})])
    source = FakeSource({DataDomain.ITEMS: make_records(2, "live")})

    view = await CacheReader(store, source).resolve(DataDomain.ITEMS)

    assert view.tier == Tier.LIVE


@pytest.mark.asyncio
async def test_live_tier_when_store_is_empty(store):
    clock = FakeClock(start=T0 + timedelta(hours=1))
    source = FakeSource({DataDomain.HIDEOUT: make_records(2, "station")})

    view = await CacheReader(store, source, clock=clock).resolve(DataDomain.HIDEOUT)

    assert view.tier == Tier.LIVE
    assert len(view.records) == 2
    assert view.as_of == T0 + timedelta(hours=1)
    assert store.metrics()["documents"] == 0


@pytest.mark.asyncio
async def test_resolve_error_when_every_tier_fails(store):
    cause = FetchError("tasks", "down", retryable=False)
    source = FakeSource({DataDomain.TASKS: cause})

    with pytest.raises(ResolveError) as excinfo:
        await CacheReader(store, source).resolve(DataDomain.TASKS)

    assert excinfo.value.cause is cause


@pytest.mark.asyncio
async def test_store_read_error_skips_cached_tiers():
    class UnreadableStore(InMemoryDocumentStore):
        def get(self, path):
            raise StoreError("offline")

    source = FakeSource({DataDomain.TASKS: make_records(1, "live")})

    view = await CacheReader(UnreadableStore(), source).resolve(DataDomain.TASKS)

    assert view.tier == Tier.LIVE


def test_cache_view_staleness():
    view = CacheView(domain=DataDomain.TASKS, records=[], tier=Tier.LIVE, as_of=T0)

    assert view.age_seconds(now=T0 + timedelta(minutes=1)) == 60
    assert view.is_stale(timedelta(hours=12), now=T0 + timedelta(hours=13))
    assert not view.is_stale(timedelta(hours=12), now=T0 + timedelta(hours=1))


@pytest.mark.asyncio
async def test_cache_memoizes_until_invalidated(store):
    source = FakeSource({DataDomain.TASKS: make_records(2, "task")})
    cache = ReferenceDataCache(CacheReader(store, source))

    first = await cache.get(DataDomain.TASKS)
    second = await cache.get(DataDomain.TASKS)
    cache.invalidate(DataDomain.TASKS)
    third = await cache.get(DataDomain.TASKS)

    assert first is second
    assert third is not first
    assert source.calls == [DataDomain.TASKS, DataDomain.TASKS]


@pytest.mark.asyncio
async def test_cache_revalidates_after_sync_from_another_process(store):
    clock = FakeClock()
    source = FakeSource({DataDomain.TASKS: make_records(1, "live")})
    cache = ReferenceDataCache(
        CacheReader(store, source), revalidate_after=timedelta(minutes=5), clock=clock
    )
    assert (await cache.get(DataDomain.TASKS)).tier == Tier.LIVE

    # written without publishing on this cache's channel
    _seed_shards(store, DataDomain.TASKS, make_records(3, "task"))
    clock.advance(timedelta(minutes=1))
    assert (await cache.get(DataDomain.TASKS)).tier == Tier.LIVE

    clock.advance(timedelta(minutes=5))
    view = await cache.get(DataDomain.TASKS)

    assert view.tier == Tier.SHARDED
    assert source.calls == [DataDomain.TASKS]


@pytest.mark.asyncio
async def test_cache_shares_in_flight_resolve():
    gate = asyncio.Event()
    view = CacheView(domain=DataDomain.ITEMS, records=[{"id": "a"}], tier=Tier.LIVE, as_of=T0)

    async def slow_resolve(domain):
        await gate.wait()
        return view

    reader = AsyncMock(spec=CacheReader)
    reader.resolve.side_effect = slow_resolve
    cache = ReferenceDataCache(reader)

    pending = [asyncio.ensure_future(cache.get(DataDomain.ITEMS)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*pending)

    assert all(result is view for result in results)
    reader.resolve.assert_awaited_once_with(DataDomain.ITEMS)


@pytest.mark.asyncio
async def test_cache_does_not_memoize_failures(store):
    source = FakeSource({DataDomain.TASKS: FetchError("tasks", "down", retryable=False)})
    cache = ReferenceDataCache(CacheReader(store, source))

    with pytest.raises(ResolveError):
        await cache.get(DataDomain.TASKS)
    source.data[DataDomain.TASKS] = make_records(1, "task")
    view = await cache.get(DataDomain.TASKS)

    assert view.tier == Tier.LIVE


@pytest.mark.asyncio
async def test_update_publish_pushes_fresh_view(store):
    channel = UpdateChannel()
    source = FakeSource({DataDomain.TASKS: make_records(1, "live")})
    cache = ReferenceDataCache(CacheReader(store, source), channel)
    stale = await cache.get(DataDomain.TASKS)
    received = []

    async def on_view(view):
        received.append(view)

    unsubscribe = cache.subscribe(DataDomain.TASKS, on_view)
    _seed_shards(store, DataDomain.TASKS, make_records(3, "task"))
    await channel.publish(DataDomain.TASKS)

    assert stale.tier == Tier.LIVE
    assert [v.tier for v in received] == [Tier.SHARDED]
    assert (await cache.get(DataDomain.TASKS)) is received[0]

    unsubscribe()
    await channel.publish(DataDomain.TASKS)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others(store):
    channel = UpdateChannel()
    _seed_shards(store, DataDomain.TASKS, make_records(3, "task"))
    cache = ReferenceDataCache(CacheReader(store, FakeSource()), channel)
    good = AsyncMock()
    cache.subscribe(DataDomain.TASKS, AsyncMock(side_effect=RuntimeError("bad subscriber")))
    cache.subscribe(DataDomain.TASKS, good)

    await channel.publish(DataDomain.TASKS)

    good.assert_awaited_once()


def test_detach_removes_channel_subscriptions():
    channel = UpdateChannel()
    cache = ReferenceDataCache(CacheReader(InMemoryDocumentStore(), FakeSource()), channel)

    assert channel.subscriber_count(DataDomain.ITEMS) == 1
    cache.detach()
    assert channel.subscriber_count(DataDomain.ITEMS) == 0
