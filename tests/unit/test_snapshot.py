import dataclasses

import pytest

from gridwatch.config import FeedConfig, SnapshotConfig
from gridwatch.data.store import TimeSeriesStore
from gridwatch.indicators.engine import DerivedEngine
from gridwatch.snapshot.health import FeedHealthTracker
from gridwatch.snapshot.service import SnapshotService, SubscriptionFilter
from gridwatch.utils.types import MetricKey, Tick, Window

T = 1_760_875_200
CEN = MetricKey("PL", "CEN", "spot-price")
NORTH = MetricKey("PL", "N", "spot-price")


def build(feeds=(), **cfg):
    store = TimeSeriesStore()
    health = FeedHealthTracker(feeds=[FeedConfig(f, f"wss://{f}", staleness_s=10.0) for f in feeds])
    svc = SnapshotService(store, DerivedEngine(store), health, SnapshotConfig(**cfg), clock=lambda: float(T))
    return store, health, svc


def tick(store, key, ts, value):
    store.ingest(Tick(key, float(ts), float(value), 1.0))


def test_snapshot_is_an_immutable_point_in_time_copy():
    store, _, svc = build()
    tick(store, CEN, T, 100)
    snap = svc.rebuild(now=T + 1)

    tick(store, CEN, T + 2, 120)
    assert snap.latest[CEN]["1m"].count == 1
    assert snap.latest[CEN]["1m"].close == 100
    assert svc.current() is snap

    with pytest.raises(TypeError):
        snap.latest[CEN] = {}
    with pytest.raises(dataclasses.FrozenInstanceError):
        snap.latest[CEN]["1m"].close = 0.0

    newer = svc.rebuild(now=T + 3)
    assert newer.seq == snap.seq + 1
    assert newer.latest[CEN]["1m"].close == 120
    assert newer.derived[CEN]["last"].value == 120


def test_counts_never_decrease_and_frozen_bucket_never_reopens():
    store, _, svc = build()
    seen = []
    for i in range(5):
        tick(store, CEN, T + 10 * i, 100 + i)
        seen.append(svc.rebuild(now=T + 10 * i + 1).latest[CEN]["1m"].count)
    assert seen == sorted(seen) == [1, 2, 3, 4, 5]

    store.roll(now=T + 60)
    b = svc.rebuild(now=T + 61).latest[CEN]["1m"]
    assert b.closed and b.start == T and b.count == 5

    tick(store, CEN, T + 65, 200)
    b = svc.rebuild(now=T + 66).latest[CEN]["1m"]
    assert not b.closed and b.start == T + 60 and b.count == 1


def test_empty_engine_snapshot():
    _, _, svc = build()
    snap = svc.current()
    assert snap.seq == 0
    assert dict(snap.latest) == {}
    assert snap.stale is False


def test_unknown_derived_kind_rejected_up_front():
    with pytest.raises(ValueError):
        build(derived=(("rsi", Window("1m", None)),))


@pytest.mark.asyncio
async def test_subscribe_starts_with_full_initial_view():
    store, _, svc = build()
    tick(store, CEN, T, 100)
    tick(store, NORTH, T, 50)
    svc.rebuild(now=T + 1)

    sub = svc.subscribe(SubscriptionFilter(patterns=("PL/CEN/*",), resolutions=("1m",)))
    first = await sub.next(timeout=1)
    assert first.initial
    assert first.seq == 1 and first.prev_seq is None
    assert set(first.buckets) == {CEN}
    assert set(first.buckets[CEN]) == {"1m"}


@pytest.mark.asyncio
async def test_deltas_follow_filter_and_skip_unchanged():
    store, _, svc = build()
    tick(store, CEN, T, 100)
    svc.rebuild(now=T + 1)
    sub = svc.subscribe(SubscriptionFilter(patterns=("PL/CEN/*",)))
    await sub.next(timeout=1)

    tick(store, NORTH, T + 2, 50)
    svc.rebuild(now=T + 3)      # nothing this subscriber cares about
    assert sub.qsize() == 0

    tick(store, CEN, T + 4, 105)
    svc.rebuild(now=T + 5)
    d = await sub.next(timeout=1)
    assert d.seq == 3 and d.prev_seq == 1
    assert set(d.buckets) == {CEN}
    assert d.buckets[CEN]["1m"].close == 105
    assert d.derived[CEN]["last"].value == 105


@pytest.mark.asyncio
async def test_drop_oldest_leaves_a_seq_gap():
    store, _, svc = build(subscriber_queue_maxsize=2)
    sub = svc.subscribe()
    seqs = []
    for i in range(3):
        tick(store, CEN, T + i, 100 + i)
        seqs.append(svc.rebuild(now=T + i).seq)

    got = [await sub.next(timeout=1), await sub.next(timeout=1)]
    assert [d.seq for d in got] == seqs[1:]
    assert got[0].prev_seq == seqs[0]       # never delivered: a gap
    assert got[1].prev_seq == got[0].seq
    assert sub.stats.dropped == 2
    assert not sub.closed


@pytest.mark.asyncio
async def test_disconnect_policy_closes_slow_subscriber():
    store, _, svc = build(subscriber_queue_maxsize=1, overflow_policy="disconnect")
    sub = svc.subscribe()
    tick(store, CEN, T, 100)
    svc.rebuild(now=T + 1)

    assert sub.closed and sub.close_reason == "overflow"
    assert await sub.next(timeout=1) is None
    assert svc.stats.disconnected == 1
    assert svc.stats.subscribers == 0


@pytest.mark.asyncio
async def test_unsubscribe_ends_iteration():
    store, _, svc = build()
    sub = svc.subscribe()
    svc.unsubscribe(sub)

    got = [d async for d in sub]
    assert got == []
    tick(store, CEN, T, 100)
    svc.rebuild(now=T + 1)
    assert sub.qsize() == 0
    assert svc.stats.subscribers == 0


@pytest.mark.asyncio
async def test_total_outage_marks_snapshot_stale_but_keeps_data():
    store, health, svc = build(feeds=("tge",))
    health.bind_key("tge", CEN)
    health.heartbeat("tge", ts=T)
    tick(store, CEN, T, 100)

    ok = svc.rebuild(now=T + 5)
    assert ok.stale is False and ok.stale_keys == frozenset()
    sub = svc.subscribe()
    await sub.next(timeout=1)

    out = svc.rebuild(now=T + 100)
    assert out.stale is True
    assert out.stale_keys == {CEN}
    assert out.latest[CEN]["1m"].close == 100
    assert out.feed_health["tge"].state == "down"

    d = await sub.next(timeout=1)
    assert d.stale is True and d.stale_keys == {CEN}
    assert d.feed_health["tge"].state == "down"


@pytest.mark.asyncio
async def test_stop_closes_every_subscription():
    _, _, svc = build()
    sub = svc.subscribe()
    await svc.stop()
    assert sub.closed and sub.close_reason == "shutdown"
    assert await sub.next(timeout=1) is None
