from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import structlog

from gridwatch.config import StoreConfig
from gridwatch.data.ring_buffer import BucketArrays, BucketRing, BucketRow
from gridwatch.errors import LateTick, StoreInvariantViolation
from gridwatch.utils.time import align_epoch, utc_now_s
from gridwatch.utils.types import RESOLUTIONS, Bucket, MetricKey, Tick

log = structlog.get_logger("store")

CloseEvent = tuple[MetricKey, str, int]   # (key, resolution, bucket start)


@dataclass(slots=True)
class _Acc:
    start: int                    # open bucket start (aligned, UNIX seconds)
    o: float = 0.0
    h: float = 0.0
    l: float = 0.0
    c: float = 0.0
    vol: float = 0.0
    vws: float = 0.0
    n: int = 0
    first_ts: float = 0.0
    last_update_ts: float = 0.0


@dataclass(slots=True)
class StoreStats:
    ingested: int = 0
    late_discarded: int = 0       # behind the lateness watermark
    late_frozen: int = 0          # per resolution: target bucket already frozen/evicted
    rejected_fenced: int = 0
    buckets_closed: int = 0
    gap_fills: int = 0
    close_events_dropped: int = 0


class _Partition:
    """All state for one MetricKey. Owned by the store; nothing else holds a reference."""
    __slots__ = ("key", "rings", "open", "watermark", "version", "closed_version", "fenced")

    def __init__(self, key: MetricKey, cfg: StoreConfig):
        self.key = key
        self.rings: Dict[str, BucketRing] = {
            r: BucketRing(cfg.capacity(r), w) for r, w in RESOLUTIONS.items()
        }
        # open buckets per resolution, by start; every open start is past the ring tail
        self.open: Dict[str, Dict[int, _Acc]] = {r: {} for r in RESOLUTIONS}
        self.watermark: Optional[float] = None
        self.version: Dict[str, int] = {r: 0 for r in RESOLUTIONS}
        self.closed_version: Dict[str, int] = {r: 0 for r in RESOLUTIONS}
        self.fenced: Optional[str] = None


class TimeSeriesStore:
    """
    Multi-resolution bucket store, one partition per MetricKey.

    Key behavior:
    - Every tick updates (or opens) the bucket it falls in, at each resolution
      (5s, 1m, 15m, 1h, 1d). Several buckets per resolution can be open at once,
      so a source running ahead never pushes a slower one's bucket closed.
    - Only the **clock-driven roll** freezes buckets, once `start + width <= now`.
      Freezing flat-fills skipped intervals (count=0, O=H=L=C=prev close).
    - Each freeze emits (key, resolution, start) to q_closed for background work.
    - Ticks behind the key's watermark by more than `lateness_s` are dropped;
      ticks that land in an already-frozen bucket are skipped for that resolution.

    Mutations are synchronous and run on the event loop that owns the store, so
    each one is a critical section: per-key writes are serialized and readers
    never observe a half-applied tick.
    """

    def __init__(
        self,
        cfg: Optional[StoreConfig] = None,
        q_closed: Optional[asyncio.Queue] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.cfg = cfg or StoreConfig()
        self.q_closed = q_closed
        self._clock = clock
        self._parts: Dict[MetricKey, _Partition] = {}
        self.stats = StoreStats()
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------------
    # lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Run the clock-driven roll until stop()."""
        await self._clock_roll_loop()

    async def stop(self) -> None:
        self._stop.set()

    # -------------------------------------------------------------------------
    # writes
    # -------------------------------------------------------------------------

    def ingest(self, tick: Tick) -> bool:
        """
        Apply one tick. Returns False when the tick was late (nothing changed).
        Raises StoreInvariantViolation if the partition is fenced.
        """
        part = self._partition(tick.key)
        if part.fenced is not None:
            self.stats.rejected_fenced += 1
            raise StoreInvariantViolation(tick.key, None, f"partition fenced: {part.fenced}")

        try:
            self._check_lateness(part, tick)
        except LateTick as e:
            self.stats.late_discarded += 1
            log.debug("late_tick", key=str(tick.key), ts=tick.ts, watermark=e.watermark)
            return False

        vol = float(tick.volume) if tick.volume is not None else 0.0
        applied = False
        for res, width in RESOLUTIONS.items():
            if self._apply(part, res, width, tick.ts, float(tick.value), vol):
                applied = True

        if part.watermark is None or tick.ts > part.watermark:
            part.watermark = tick.ts
        if applied:
            self.stats.ingested += 1
        return applied

    def roll(self, now: Optional[float] = None) -> int:
        """
        Freeze every open bucket whose interval ended at or before `now`, oldest
        first, then flat-fill the elapsed intervals up to the next open bucket.
        Returns the number of buckets frozen.
        """
        now = self._clock() if now is None else now
        closed = 0
        for part in list(self._parts.values()):
            if part.fenced is not None:
                continue
            try:
                for res, width in RESOLUTIONS.items():
                    closed += self._roll_resolution(part, res, width, now)
            except StoreInvariantViolation as e:
                self._fence(part, e)
        return closed

    def _roll_resolution(self, part: _Partition, res: str, width: int, now: float) -> int:
        pending = part.open[res]
        due = sorted(s for s in pending if s + width <= now)
        for s in due:
            self._freeze(part, res, pending.pop(s))
        prev = part.rings[res].last_row()
        if pending and prev is not None:
            self._gap_fill(part, res, prev.epoch + width, min(min(pending), align_epoch(now, width)), prev.c)
        return len(due)

    def restore(self, key: MetricKey, resolution: str, rows: Iterable[BucketRow]) -> int:
        """
        Load frozen buckets (e.g. from persistence) behind whatever the ring holds.
        Rows at or before the ring's last epoch are skipped; gaps are flat-filled.
        """
        part = self._partition(key)
        ring = part.rings[resolution]
        width = RESOLUTIONS[resolution]
        first_open = min(part.open[resolution], default=None)
        loaded = 0
        try:
            for row in sorted(rows, key=lambda r: r.epoch):
                last = ring.last_epoch()
                if last is not None and row.epoch <= last:
                    continue
                if first_open is not None and row.epoch >= first_open:
                    break
                if last is not None:
                    prev = ring.last_row()
                    self._gap_fill(part, resolution, last + width, row.epoch, prev.c if prev else row.o)
                self._append(part, resolution, row)
                loaded += 1
        except StoreInvariantViolation as e:
            self._fence(part, e)
            raise
        if loaded:
            part.closed_version[resolution] += 1
            part.version[resolution] += 1
        return loaded

    # -------------------------------------------------------------------------
    # reads
    # -------------------------------------------------------------------------

    def keys(self) -> list[MetricKey]:
        return list(self._parts.keys())

    def fenced_keys(self) -> frozenset[MetricKey]:
        return frozenset(k for k, p in self._parts.items() if p.fenced is not None)

    def version(self, key: MetricKey, resolution: str, closed_only: bool = False) -> int:
        part = self._parts.get(key)
        if part is None:
            return 0
        return part.closed_version[resolution] if closed_only else part.version[resolution]

    def query(
        self,
        key: MetricKey,
        resolution: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        include_open: bool = True,
    ) -> list[Bucket]:
        """Buckets intersecting [start, end), oldest first. Empty list when there is no data."""
        arr = self.arrays(key, resolution, start, end, include_open=include_open)
        part = self._parts.get(key)
        open_starts = part.open[resolution] if part is not None else {}
        width = RESOLUTIONS[resolution]
        out: list[Bucket] = []
        for i in range(len(arr)):
            ep = int(arr.epoch[i])
            out.append(
                Bucket(
                    key=key, resolution=resolution, start=ep, end=ep + width,
                    open=float(arr.o[i]), high=float(arr.h[i]), low=float(arr.l[i]), close=float(arr.c[i]),
                    volume_sum=float(arr.vol[i]), value_weighted_sum=float(arr.vws[i]), count=int(arr.n[i]),
                    closed=ep not in open_starts,
                )
            )
        return out

    def arrays(
        self,
        key: MetricKey,
        resolution: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        include_open: bool = True,
    ) -> BucketArrays:
        width = RESOLUTIONS[resolution]
        part = self._parts.get(key)
        if part is None:
            return BucketArrays.empty(width)
        s = None if start is None else int(math.floor(start))
        e = None if end is None else int(math.ceil(end))
        arr = part.rings[resolution].arrays(s, e)
        if include_open:
            for start in sorted(part.open[resolution]):
                if (s is None or start + width > s) and (e is None or start < e):
                    arr = arr.append_row(_row(part.open[resolution][start]))
        return arr

    def latest(self, key: MetricKey, resolution: str, closed_only: bool = False) -> Optional[Bucket]:
        part = self._parts.get(key)
        if part is None:
            return None
        pending = part.open[resolution]
        if not closed_only and pending:
            return _bucket(key, resolution, _row(pending[max(pending)]), closed=False)
        row = part.rings[resolution].last_row()
        return _bucket(key, resolution, row, closed=True) if row is not None else None

    def latest_all(self, resolutions: Iterable[str]) -> dict[MetricKey, dict[str, Bucket]]:
        """Point-in-time copy of every key's newest bucket per resolution."""
        out: dict[MetricKey, dict[str, Bucket]] = {}
        for key in list(self._parts.keys()):
            per: dict[str, Bucket] = {}
            for res in resolutions:
                b = self.latest(key, res)
                if b is not None:
                    per[res] = b
            if per:
                out[key] = per
        return out

    # -------------------------------------------------------------------------
    # core tick handling
    # -------------------------------------------------------------------------

    def _partition(self, key: MetricKey) -> _Partition:
        part = self._parts.get(key)
        if part is None:
            part = _Partition(key, self.cfg)
            self._parts[key] = part
        return part

    def _check_lateness(self, part: _Partition, tick: Tick) -> None:
        if part.watermark is not None and tick.ts < part.watermark - self.cfg.lateness_s:
            raise LateTick(tick.key, tick.ts, part.watermark)

    def _apply(self, part: _Partition, res: str, width: int, ts: float, px: float, vol: float) -> bool:
        start = align_epoch(ts, width)
        pending = part.open[res]
        a = pending.get(start)

        if a is None:
            last = part.rings[res].last_epoch()
            if last is not None and start <= last:
                # bucket already frozen (or evicted); policy: skip
                self.stats.late_frozen += 1
                return False
            pending[start] = _Acc(start, px, px, px, px, vol, px * vol, 1, ts, ts)
        else:
            # out-of-order ticks inside the bucket keep open/close tied to tick time
            if ts >= a.last_update_ts:
                a.c = px
                a.last_update_ts = ts
            if ts < a.first_ts:
                a.o = px
                a.first_ts = ts
            if px > a.h:
                a.h = px
            if px < a.l:
                a.l = px
            a.vol += vol
            a.vws += px * vol
            a.n += 1

        part.version[res] += 1
        return True

    def _gap_fill(self, part: _Partition, res: str, first: int, stop: int, prev_close: float) -> None:
        """Flat buckets for [first, stop); only the newest `capacity` can survive, so skip the rest."""
        width = RESOLUTIONS[res]
        if first >= stop:
            return
        ring = part.rings[res]
        missing = (stop - first) // width
        if missing >= ring.capacity:
            ring.clear()
            first = stop - ring.capacity * width
        t = first
        while t < stop:
            self._append(part, res, BucketRow(t, prev_close, prev_close, prev_close, prev_close, 0.0, 0.0, 0))
            self.stats.gap_fills += 1
            t += width
        part.version[res] += 1
        part.closed_version[res] += 1

    def _append(self, part: _Partition, res: str, row: BucketRow) -> None:
        try:
            part.rings[res].append(row)
        except StoreInvariantViolation as e:
            raise StoreInvariantViolation(part.key, res, e.detail) from None

    def _freeze(self, part: _Partition, res: str, a: _Acc) -> None:
        prev = part.rings[res].last_row()
        if prev is not None:
            self._gap_fill(part, res, prev.epoch + RESOLUTIONS[res], a.start, prev.c)
        row = _row(a)
        self._append(part, res, row)
        part.version[res] += 1
        part.closed_version[res] += 1
        self.stats.buckets_closed += 1
        self._emit_close(part.key, res, row.epoch)

    def _emit_close(self, key: MetricKey, res: str, start: int) -> None:
        if self.q_closed is None:
            return
        try:
            self.q_closed.put_nowait((key, res, start))
        except asyncio.QueueFull:
            # drop: background worker is behind; derived caches still invalidate by version
            self.stats.close_events_dropped += 1
            log.warning("bucket_close_queue_full", key=str(key), resolution=res, start=start)

    def _fence(self, part: _Partition, err: StoreInvariantViolation) -> None:
        if part.fenced is None:
            part.fenced = err.detail
            log.critical(
                "store_invariant_violation",
                key=str(part.key), resolution=err.resolution, detail=err.detail,
            )

    # -------------------------------------------------------------------------
    # background loop
    # -------------------------------------------------------------------------

    async def _clock_roll_loop(self) -> None:
        """
        At each 5s boundary (the finest resolution, and every coarser boundary is
        also one), freeze all buckets whose interval has elapsed.
        """
        bs = min(RESOLUTIONS.values())
        try:
            while not self._stop.is_set():
                now = self._clock()
                next_boundary = (math.floor(now / bs) + 1) * bs
                # Sleep until just after the boundary to avoid racing arriving ticks
                await asyncio.sleep(max(0.0, next_boundary - now + 0.01))
                self.roll(float(next_boundary))
        except asyncio.CancelledError:
            return


def _row(a: _Acc) -> BucketRow:
    return BucketRow(a.start, a.o, a.h, a.l, a.c, a.vol, a.vws, a.n)


def _bucket(key: MetricKey, resolution: str, row: BucketRow, closed: bool) -> Bucket:
    return Bucket(
        key=key, resolution=resolution, start=row.epoch, end=row.epoch + RESOLUTIONS[resolution],
        open=row.o, high=row.h, low=row.l, close=row.c,
        volume_sum=row.vol, value_weighted_sum=row.vws, count=row.n, closed=closed,
    )
