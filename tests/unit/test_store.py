import asyncio

import pytest

from gridwatch.config import StoreConfig
from gridwatch.data.ring_buffer import BucketRow
from gridwatch.data.store import TimeSeriesStore
from gridwatch.errors import StoreInvariantViolation
from gridwatch.utils.types import MetricKey, Tick

T = 1_760_875_200  # 2025-10-19 12:00:00 UTC, aligned to every resolution below 1d
KEY = MetricKey("PL", "CEN", "spot-price")
SMALL = StoreConfig(retention_s={"5s": 20, "1m": 600, "15m": 9000, "1h": 36000, "1d": 864000})


def tick(ts, value, volume=1.0, key=KEY):
    return Tick(key=key, ts=float(ts), value=float(value), volume=volume)


def test_open_bucket_ohlc_and_count():
    store = TimeSeriesStore()
    for dt, px in [(0, 10), (1, 12), (2, 9), (3, 11)]:
        assert store.ingest(tick(T + dt, px))

    b = store.latest(KEY, "5s")
    assert (b.open, b.high, b.low, b.close) == (10, 12, 9, 11)
    assert b.high >= max(b.open, b.close) and min(b.open, b.close) >= b.low
    assert b.count == 4
    assert b.volume_sum == 4.0
    assert b.value_weighted_sum == pytest.approx(42.0)
    assert not b.closed
    # same ticks landed in every coarser resolution
    assert store.latest(KEY, "1h").count == 4


def test_gap_fill_is_flat_at_previous_close():
    store = TimeSeriesStore()
    store.ingest(tick(T, 10))
    store.ingest(tick(T + 17, 20))
    # nothing is frozen (or filled) before the clock says so
    assert [b.start for b in store.query(KEY, "5s")] == [T, T + 15]

    store.roll(now=T + 18)
    bs = store.query(KEY, "5s", T, T + 20)
    assert [b.start for b in bs] == [T, T + 5, T + 10, T + 15]
    assert [b.count for b in bs] == [1, 0, 0, 1]
    assert [b.close for b in bs] == [10, 10, 10, 20]
    assert [b.closed for b in bs] == [True, True, True, False]
    assert bs[1].open == bs[1].high == bs[1].low == 10
    assert store.stats.gap_fills == 2


def test_late_tick_behind_watermark_is_dropped_and_counted():
    store = TimeSeriesStore(StoreConfig(lateness_s=60))
    store.ingest(tick(T, 10))
    store.ingest(tick(T + 200, 20))
    before = store.query(KEY, "5s", T, T + 5)

    assert store.ingest(tick(T + 1, 999)) is False
    assert store.stats.late_discarded == 1
    assert store.query(KEY, "5s", T, T + 5) == before


def test_late_tick_never_touches_frozen_buckets():
    store = TimeSeriesStore(StoreConfig(lateness_s=60))
    store.ingest(tick(T, 10))
    store.ingest(tick(T + 200, 20))
    store.roll(now=T + 201)
    frozen_5s = store.query(KEY, "5s", T + 170, T + 175)
    frozen_1m = store.query(KEY, "1m", T + 120, T + 180)

    # inside the lateness window: 5s and 1m targets are frozen, 15m is still open
    assert store.ingest(tick(T + 170, 50)) is True
    assert store.query(KEY, "5s", T + 170, T + 175) == frozen_5s
    assert store.query(KEY, "1m", T + 120, T + 180) == frozen_1m
    assert store.stats.late_frozen == 2
    b15 = store.latest(KEY, "15m")
    # high/count take the tick; close stays with the newest tick time
    assert b15.count == 3 and b15.high == 50 and b15.close == 20


def test_roll_closes_elapsed_buckets_and_emits_events():
    q = asyncio.Queue()
    store = TimeSeriesStore(q_closed=q)
    store.ingest(tick(T + 1, 10))

    assert store.roll(now=T + 4) == 0
    assert store.roll(now=T + 5) == 1
    assert store.roll(now=T + 5) == 0      # idempotent
    assert q.get_nowait() == (KEY, "5s", T)

    b = store.latest(KEY, "5s")
    assert b.closed and b.start == T and b.count == 1
    assert not store.latest(KEY, "1m").closed

    # next tick after an idle roll flat-fills from the frozen bucket
    store.ingest(tick(T + 12, 11))
    store.roll(now=T + 15)
    assert [b.count for b in store.query(KEY, "5s")] == [1, 0, 1]


def test_close_queue_full_drops_and_counts():
    store = TimeSeriesStore(q_closed=asyncio.Queue(maxsize=1))
    store.ingest(tick(T, 1))
    store.ingest(tick(T + 5, 2))
    store.ingest(tick(T + 10, 3))
    assert store.stats.buckets_closed == 0
    assert store.roll(now=T + 10) == 2
    assert store.stats.buckets_closed == 2
    assert store.stats.close_events_dropped == 1


def test_ring_eviction_keeps_contiguous_tail():
    store = TimeSeriesStore(SMALL)
    for i in range(7):
        store.ingest(tick(T + 5 * i, i))
    store.roll(now=T + 30)
    closed = store.query(KEY, "5s", include_open=False)
    assert [b.start for b in closed] == [T + 10, T + 15, T + 20, T + 25]
    assert [b.close for b in closed] == [2, 3, 4, 5]


def test_gap_longer_than_retention_keeps_only_newest_fills():
    store = TimeSeriesStore(SMALL)
    store.ingest(tick(T, 1))
    store.ingest(tick(T + 1000, 2))
    store.roll(now=T + 1000)
    bs = store.query(KEY, "5s")
    assert [b.start for b in bs] == [T + 980, T + 985, T + 990, T + 995, T + 1000]
    assert [b.count for b in bs] == [0, 0, 0, 0, 1]


def test_query_without_data_is_empty():
    store = TimeSeriesStore()
    assert store.query(MetricKey("DE", "SYS", "load"), "1m") == []
    assert store.latest(MetricKey("DE", "SYS", "load"), "1m") is None


def test_invariant_violation_fences_only_that_partition():
    store = TimeSeriesStore()
    other = MetricKey("PL", "CEN", "load")
    store.ingest(tick(T, 1))
    store.ingest(tick(T + 5, 2))
    store.ingest(tick(T, 5, key=other))
    store.roll(now=T + 10)

    # corrupt the newest frozen 5s epoch so the next freeze is non-contiguous
    ring = store._parts[KEY].rings["5s"]
    ring.epoch[(ring.head - 1) % ring.capacity] = T + 7

    assert store.ingest(tick(T + 10, 3))
    store.roll(now=T + 15)
    assert store.fenced_keys() == frozenset({KEY})

    with pytest.raises(StoreInvariantViolation):
        store.ingest(tick(T + 11, 4))
    assert store.stats.rejected_fenced == 1

    assert store.ingest(tick(T + 16, 6, key=other))
    assert store.roll(now=T + 3600) > 0


def test_bucket_stays_open_until_its_interval_ends():
    # two sources for one key, the second running a few seconds ahead
    store = TimeSeriesStore(StoreConfig(lateness_s=60))
    store.ingest(tick(T + 1, 10))
    store.ingest(tick(T + 6, 20))
    assert store.roll(now=T + 4) == 0
    assert store.ingest(tick(T + 4, 99))

    first, ahead = store.query(KEY, "5s")
    assert not first.closed and not ahead.closed
    assert (first.count, first.high, first.close) == (2, 99, 99)
    assert store.stats.late_frozen == 0

    assert store.roll(now=T + 5) == 1
    frozen = store.query(KEY, "5s", include_open=False)
    assert [(b.start, b.count, b.high) for b in frozen] == [(T, 2, 99)]
    assert store.latest(KEY, "5s").start == T + 5
    assert store.latest(KEY, "1m").count == 3


def test_restore_loads_rows_and_bumps_versions():
    store = TimeSeriesStore()
    rows = [BucketRow(T + 60 * i, 10.0 + i, 10.0 + i, 10.0 + i, 10.0 + i, 1.0, 10.0 + i, 1) for i in (0, 1, 3)]
    assert store.restore(KEY, "1m", rows) == 3
    bs = store.query(KEY, "1m")
    assert [b.start for b in bs] == [T, T + 60, T + 120, T + 180]
    assert [b.count for b in bs] == [1, 1, 0, 1]
    assert all(b.closed for b in bs)
    assert store.version(KEY, "1m", closed_only=True) > 0
