from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from gridwatch.errors import StoreInvariantViolation

_FIELDS = ("epoch", "o", "h", "l", "c", "vol", "vws", "n")


class RingView:
    """
    Zero-copy view of last N buckets.
    - If the buffer hasn't wrapped, slices is [tuple of np.ndarray slices].
    - If it has wrapped, slices is [segment1, segment2] in time order.
    Each segment is (epoch, o, h, l, c, vol, vws, n).
    """
    __slots__ = ("slices", "length")
    def __init__(self, slices: list[tuple[np.ndarray, ...]] | None, length: int):
        self.slices = slices or []
        self.length = length


@dataclass(slots=True)
class BucketRow:
    epoch: int      # bucket start (aligned, UNIX seconds)
    o: float
    h: float
    l: float
    c: float
    vol: float      # volumeSum
    vws: float      # valueWeightedSum
    n: int          # tick count (0 for gap fills)


class BucketArrays:
    """Contiguous (stitched, time-ordered) copy of a ring range. Safe to keep after the ring moves on."""
    __slots__ = _FIELDS + ("width_s",)

    def __init__(self, width_s: int, epoch, o, h, l, c, vol, vws, n):
        self.width_s = width_s
        self.epoch = epoch
        self.o = o
        self.h = h
        self.l = l
        self.c = c
        self.vol = vol
        self.vws = vws
        self.n = n

    @classmethod
    def empty(cls, width_s: int) -> "BucketArrays":
        f = np.empty(0, dtype=np.float64)
        return cls(width_s, np.empty(0, dtype=np.int64), f, f, f, f, f, f, np.empty(0, dtype=np.int64))

    def __len__(self) -> int:
        return int(self.epoch.size)

    def select(self, mask: np.ndarray) -> "BucketArrays":
        return BucketArrays(self.width_s, *(getattr(self, f)[mask] for f in _FIELDS))

    def observed(self) -> "BucketArrays":
        """Only buckets that saw at least one tick (drops gap fills)."""
        return self.select(self.n > 0)

    def append_row(self, row: BucketRow) -> "BucketArrays":
        vals = (row.epoch, row.o, row.h, row.l, row.c, row.vol, row.vws, row.n)
        return BucketArrays(
            self.width_s,
            *(np.append(getattr(self, f), np.array([v], dtype=getattr(self, f).dtype)) for f, v in zip(_FIELDS, vals)),
        )


class BucketRing:
    """
    Fixed-size circular buffer of *frozen* buckets for one key + resolution.
    Arrays:
      epoch[int64], o,h,l,c,vol,vws[float64], n[int64]

    Appends must extend the ring contiguously (epoch == last + width_s);
    anything else is a StoreInvariantViolation. A full ring evicts its oldest
    bucket on append (FIFO, O(1)).
    """
    __slots__ = ("capacity", "width_s", "size", "head") + _FIELDS
    def __init__(self, capacity: int, width_s: int):
        self.capacity = int(capacity)
        self.width_s = int(width_s)
        self.size = 0
        self.head = 0  # next write index
        self.epoch = np.empty(self.capacity, dtype=np.int64)
        self.o = np.empty(self.capacity, dtype=np.float64)
        self.h = np.empty(self.capacity, dtype=np.float64)
        self.l = np.empty(self.capacity, dtype=np.float64)
        self.c = np.empty(self.capacity, dtype=np.float64)
        self.vol = np.empty(self.capacity, dtype=np.float64)
        self.vws = np.empty(self.capacity, dtype=np.float64)
        self.n = np.empty(self.capacity, dtype=np.int64)

    def append(self, row: BucketRow) -> Optional[int]:
        """Append a frozen bucket; returns the evicted epoch, if any."""
        last = self.last_epoch()
        if last is not None and row.epoch != last + self.width_s:
            raise StoreInvariantViolation(
                None, None, f"non-contiguous append: epoch {row.epoch} after {last} (width {self.width_s}s)"
            )
        if row.n > 0 and not (row.h >= max(row.o, row.c) and min(row.o, row.c) >= row.l):
            raise StoreInvariantViolation(
                None, None, f"OHLC out of order at {row.epoch}: o={row.o} h={row.h} l={row.l} c={row.c}"
            )

        evicted = None
        i = self.head
        if self.size == self.capacity:
            evicted = int(self.epoch[i])
        self.epoch[i] = row.epoch
        self.o[i] = row.o
        self.h[i] = row.h
        self.l[i] = row.l
        self.c[i] = row.c
        self.vol[i] = row.vol
        self.vws[i] = row.vws
        self.n[i] = row.n
        self.head = (i + 1) % self.capacity
        if self.size < self.capacity:
            self.size += 1
        return evicted

    def clear(self) -> None:
        self.size = 0
        self.head = 0

    def last_epoch(self) -> int | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return int(self.epoch[idx])

    def last_row(self) -> Optional[BucketRow]:
        if self.size == 0:
            return None
        i = (self.head - 1) % self.capacity
        return BucketRow(
            int(self.epoch[i]), float(self.o[i]), float(self.h[i]), float(self.l[i]),
            float(self.c[i]), float(self.vol[i]), float(self.vws[i]), int(self.n[i]),
        )

    def view_last(self, n: int) -> RingView:
        """
        Return up to last n buckets as zero-copy slices in time order.
        """
        if self.size == 0:
            return RingView([], 0)
        n = int(n)
        if n <= 0:
            return RingView([], 0)
        n = min(n, self.size)

        end = self.head  # exclusive
        start = (end - n) % self.capacity

        if start < end:
            sl = slice(start, end)
            return RingView([tuple(getattr(self, f)[sl] for f in _FIELDS)], n)
        # wrapped: [start..cap) + [0..end)
        sl1 = slice(start, self.capacity)
        sl2 = slice(0, end)
        return RingView(
            [
                tuple(getattr(self, f)[sl1] for f in _FIELDS),
                tuple(getattr(self, f)[sl2] for f in _FIELDS),
            ],
            n,
        )

    def arrays(self, start: Optional[int] = None, end: Optional[int] = None) -> BucketArrays:
        """
        Stitched copy of buckets whose [epoch, epoch + width) intersects [start, end).
        None bounds are open.
        """
        view = self.view_last(self.size)
        if view.length == 0:
            return BucketArrays.empty(self.width_s)
        cols = [np.concatenate([seg[j] for seg in view.slices]) for j in range(len(_FIELDS))]
        ep = cols[0]
        # epochs are strictly increasing, so the range is a contiguous slice
        lo = 0 if start is None else int(np.searchsorted(ep, start - self.width_s, side="right"))
        hi = ep.size if end is None else int(np.searchsorted(ep, end, side="left"))
        return BucketArrays(self.width_s, *(col[lo:hi] for col in cols))
