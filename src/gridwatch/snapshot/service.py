from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional

import structlog

from gridwatch.config import OverflowPolicy, SnapshotConfig
from gridwatch.data.store import TimeSeriesStore
from gridwatch.indicators.engine import DerivedEngine
from gridwatch.indicators.registry import get_calculator
from gridwatch.snapshot.health import FeedHealthTracker
from gridwatch.utils.time import utc_now_s
from gridwatch.utils.types import Bucket, MetricKey, Snapshot, SnapshotDelta, resolution_seconds

log = structlog.get_logger("snapshot")

_EMPTY: Mapping = MappingProxyType({})


def _empty_snapshot() -> Snapshot:
    return Snapshot(
        seq=0, as_of=0.0, latest=_EMPTY, derived=_EMPTY, feed_health=_EMPTY,
        stale_keys=frozenset(), fenced_keys=frozenset(), stale=False,
    )


# ============================================================
# Subscriptions
# ============================================================

@dataclass(frozen=True, slots=True)
class SubscriptionFilter:
    """Which part of the snapshot a subscriber wants. None = everything."""
    patterns: tuple[str, ...] = ("*/*/*",)
    resolutions: Optional[tuple[str, ...]] = None
    kinds: Optional[tuple[str, ...]] = None

    def wants_key(self, key: MetricKey) -> bool:
        return any(key.matches(p) for p in self.patterns)


@dataclass(slots=True)
class SubscriptionStats:
    delivered: int = 0
    dropped: int = 0


class Subscription:
    """
    Handle returned by subscribe(). Deltas arrive in seq order; a delta whose
    prev_seq is not the last seq you saw means earlier deltas were dropped.

        async for delta in sub:
            ...

    Iteration ends after close() (unsubscribe, overflow under the "disconnect"
    policy, or service shutdown).
    """

    def __init__(self, sub_id: int, filt: SubscriptionFilter, maxsize: int, policy: OverflowPolicy):
        self.sub_id = sub_id
        self.filter = filt
        self.policy = policy
        self._q: asyncio.Queue[Optional[SnapshotDelta]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.close_reason: Optional[str] = None
        self.last_seq: Optional[int] = None     # seq of the newest delta pushed
        self.stats = SubscriptionStats()

    def push(self, delta: SnapshotDelta) -> bool:
        if self.closed:
            return False
        try:
            self._q.put_nowait(delta)
        except asyncio.QueueFull:
            if self.policy == "disconnect":
                log.warning("subscriber_overflow", sub_id=self.sub_id, policy=self.policy)
                self.close("overflow")
                return False
            # drop-oldest: the subscriber sees a seq gap
            self._q.get_nowait()
            self.stats.dropped += 1
            if self.stats.dropped == 1 or self.stats.dropped % 100 == 0:
                log.warning("subscriber_overflow", sub_id=self.sub_id, policy=self.policy,
                            dropped=self.stats.dropped)
            self._q.put_nowait(delta)
        self.last_seq = delta.seq
        return True

    async def next(self, timeout: Optional[float] = None) -> Optional[SnapshotDelta]:
        """Next delta, or None once the subscription has ended. Raises TimeoutError on timeout."""
        if self.closed and self._q.empty():
            return None
        item = await asyncio.wait_for(self._q.get(), timeout)
        if item is None:
            return None
        self.stats.delivered += 1
        return item

    def qsize(self) -> int:
        return self._q.qsize()

    def close(self, reason: str = "unsubscribed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        # release pending deltas and wake any reader
        while not self._q.empty():
            self._q.get_nowait()
        self._q.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> SnapshotDelta:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item


# ============================================================
# Snapshot service
# ============================================================

@dataclass(slots=True)
class SnapshotStats:
    built: int = 0
    deferred: int = 0         # timer ticks skipped while bucket closes were pending
    subscribers: int = 0
    disconnected: int = 0


class SnapshotService:
    """
    Builds immutable point-in-time snapshots and fans deltas out to subscribers.

    rebuild() runs synchronously on the loop that owns the store, so the copy it
    takes can never interleave with a tick. current() returns the last complete
    snapshot and never waits. When every feed is stale or down the snapshot is
    still built from the last-known data, with stale=True.

    `hold` lets the owner pause timer-driven rebuilds, e.g. while freshly
    closed buckets have not been through the alert pass yet.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        derived: DerivedEngine,
        health: FeedHealthTracker,
        cfg: Optional[SnapshotConfig] = None,
        clock: Callable[[], float] = utc_now_s,
        hold: Optional[Callable[[], bool]] = None,
    ):
        self.store = store
        self.derived = derived
        self.health = health
        self.cfg = cfg or SnapshotConfig()
        for kind, window in self.cfg.derived:
            get_calculator(kind)
            resolution_seconds(window.resolution)
        self._clock = clock
        self._hold = hold
        self._current = _empty_snapshot()
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self.stats = SnapshotStats()
        self._stop = asyncio.Event()

    # ---- lifecycle ----

    async def start(self) -> None:
        """Rebuild every interval_s until stop()."""
        try:
            while not self._stop.is_set():
                self.maybe_rebuild()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            return

    async def stop(self) -> None:
        self._stop.set()
        for sub in list(self._subs.values()):
            sub.close("shutdown")
        self._subs.clear()

    # ---- reads ----

    def current(self) -> Snapshot:
        return self._current

    def maybe_rebuild(self, now: Optional[float] = None) -> Optional[Snapshot]:
        """Timer rebuild; skipped (None) while the hold predicate is true."""
        if self._hold is not None and self._hold():
            self.stats.deferred += 1
            return None
        return self.rebuild(now)

    def rebuild(self, now: Optional[float] = None) -> Snapshot:
        now = self._clock() if now is None else now
        latest = self.store.latest_all(self.cfg.resolutions)

        derived: dict[MetricKey, Mapping] = {}
        for key in latest:
            per = {kind: self.derived.get(key, kind, window) for kind, window in self.cfg.derived}
            derived[key] = MappingProxyType(per)

        status = self.health.status(now)
        prev = self._current
        snap = Snapshot(
            seq=prev.seq + 1,
            as_of=now,
            latest=MappingProxyType({k: MappingProxyType(v) for k, v in latest.items()}),
            derived=MappingProxyType(derived),
            feed_health=MappingProxyType(status),
            stale_keys=self.health.stale_keys(status),
            fenced_keys=self.store.fenced_keys(),
            stale=self.health.total_outage(status),
        )
        self._current = snap
        self.stats.built += 1
        if snap.stale and not prev.stale:
            log.warning("snapshot_stale_total_outage", seq=snap.seq)
        self._publish(prev, snap)
        return snap

    # ---- subscriptions ----

    def subscribe(self, filt: Optional[SubscriptionFilter] = None) -> Subscription:
        sub = Subscription(
            next(self._ids),
            filt or SubscriptionFilter(),
            self.cfg.subscriber_queue_maxsize,
            self.cfg.overflow_policy,
        )
        self._subs[sub.sub_id] = sub
        self.stats.subscribers = len(self._subs)
        sub.push(_delta(None, self._current, sub.filter, prev_seq=None))
        log.info("subscriber_added", sub_id=sub.sub_id, patterns=sub.filter.patterns)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close("unsubscribed")
        self._subs.pop(sub.sub_id, None)
        self.stats.subscribers = len(self._subs)

    def _publish(self, prev: Snapshot, snap: Snapshot) -> None:
        for sub in list(self._subs.values()):
            if sub.closed:
                self._drop(sub)
                continue
            delta = _delta(prev, snap, sub.filter, prev_seq=sub.last_seq)
            was_stale = frozenset(k for k in prev.stale_keys if sub.filter.wants_key(k))
            if _is_empty(delta) and snap.stale == prev.stale and delta.stale_keys == was_stale:
                continue
            if not sub.push(delta):
                self._drop(sub)

    def _drop(self, sub: Subscription) -> None:
        if self._subs.pop(sub.sub_id, None) is not None:
            self.stats.disconnected += 1
            self.stats.subscribers = len(self._subs)
            log.info("subscriber_removed", sub_id=sub.sub_id, reason=sub.close_reason)


def _filtered_buckets(snap: Snapshot, f: SubscriptionFilter) -> dict[MetricKey, dict[str, Bucket]]:
    out: dict[MetricKey, dict[str, Bucket]] = {}
    for key, per in snap.latest.items():
        if not f.wants_key(key):
            continue
        sel = {r: b for r, b in per.items() if f.resolutions is None or r in f.resolutions}
        if sel:
            out[key] = sel
    return out


def _filtered_derived(snap: Snapshot, f: SubscriptionFilter) -> dict[MetricKey, dict]:
    out: dict[MetricKey, dict] = {}
    for key, per in snap.derived.items():
        if not f.wants_key(key):
            continue
        sel = {k: v for k, v in per.items() if f.kinds is None or k in f.kinds}
        if sel:
            out[key] = sel
    return out


def _changed(old: Mapping[MetricKey, Mapping], new: Mapping[MetricKey, Mapping]) -> dict:
    out: dict = {}
    for key, per in new.items():
        before = old.get(key, {})
        diff = {name: v for name, v in per.items() if before.get(name) != v}
        if diff:
            out[key] = MappingProxyType(diff)
    return out


def _delta(prev: Optional[Snapshot], snap: Snapshot, f: SubscriptionFilter, prev_seq: Optional[int]) -> SnapshotDelta:
    buckets = _filtered_buckets(snap, f)
    derived = _filtered_derived(snap, f)
    stale_keys = frozenset(k for k in snap.stale_keys if f.wants_key(k))
    if prev is None:
        return SnapshotDelta(
            seq=snap.seq, prev_seq=None, as_of=snap.as_of,
            buckets=MappingProxyType({k: MappingProxyType(v) for k, v in buckets.items()}),
            derived=MappingProxyType({k: MappingProxyType(v) for k, v in derived.items()}),
            feed_health=snap.feed_health, stale_keys=stale_keys, stale=snap.stale, initial=True,
        )
    health = {
        fid: st for fid, st in snap.feed_health.items()
        if fid not in prev.feed_health or prev.feed_health[fid].state != st.state
    }
    return SnapshotDelta(
        seq=snap.seq,
        prev_seq=prev_seq,
        as_of=snap.as_of,
        buckets=MappingProxyType(_changed(_filtered_buckets(prev, f), buckets)),
        derived=MappingProxyType(_changed(_filtered_derived(prev, f), derived)),
        feed_health=MappingProxyType(health),
        stale_keys=stale_keys,
        stale=snap.stale,
    )


def _is_empty(d: SnapshotDelta) -> bool:
    return not d.buckets and not d.derived and not d.feed_health
