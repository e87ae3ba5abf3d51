from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import structlog

from gridwatch.config import FeedConfig, SnapshotConfig
from gridwatch.utils.time import utc_now_s
from gridwatch.utils.types import FeedState, FeedStatus, MetricKey

log = structlog.get_logger("health")


@dataclass(slots=True)
class _Feed:
    feed_id: str
    staleness_s: float
    last_seen: Optional[float] = None
    disconnected: bool = True
    last_state: Optional[str] = None


class FeedHealthTracker:
    """
    Per-feed heartbeat bookkeeping.

    ok     last message within staleness_s
    stale  silent for longer than staleness_s
    down   silent for longer than staleness_s * down_after_factor, disconnected,
           or never heard from

    Keys remember which feeds deliver them; a key is stale only when none of
    its feeds is ok. Keys submitted without a source are never marked stale.
    """

    def __init__(
        self,
        cfg: Optional[SnapshotConfig] = None,
        feeds: Iterable[FeedConfig] = (),
        clock: Callable[[], float] = utc_now_s,
    ):
        self.cfg = cfg or SnapshotConfig()
        self._clock = clock
        self._feeds: Dict[str, _Feed] = {}
        self._key_feeds: Dict[MetricKey, set[str]] = {}
        for f in feeds:
            self.register(f.feed_id, f.staleness_s)

    def register(self, feed_id: str, staleness_s: Optional[float] = None) -> None:
        if feed_id not in self._feeds:
            self._feeds[feed_id] = _Feed(feed_id, staleness_s or self.cfg.default_staleness_s)

    def feed_ids(self) -> list[str]:
        return list(self._feeds)

    def heartbeat(self, feed_id: str, ts: Optional[float] = None) -> None:
        f = self._feeds.get(feed_id)
        if f is None:
            self.register(feed_id)
            f = self._feeds[feed_id]
        f.last_seen = self._clock() if ts is None else ts
        f.disconnected = False

    def mark_disconnected(self, feed_id: str) -> None:
        f = self._feeds.get(feed_id)
        if f is not None:
            f.disconnected = True

    def bind_key(self, feed_id: str, key: MetricKey) -> None:
        owners = self._key_feeds.get(key)
        if owners is None:
            owners = self._key_feeds[key] = set()
        if feed_id not in owners:
            owners.add(feed_id)
            self.register(feed_id)

    # ---- queries ----

    def _state(self, f: _Feed, now: float) -> tuple[FeedState, Optional[float]]:
        age = None if f.last_seen is None else max(0.0, now - f.last_seen)
        if f.disconnected or age is None or age > f.staleness_s * self.cfg.down_after_factor:
            return "down", age
        if age > f.staleness_s:
            return "stale", age
        return "ok", age

    def status(self, now: Optional[float] = None) -> dict[str, FeedStatus]:
        now = self._clock() if now is None else now
        out: dict[str, FeedStatus] = {}
        for f in self._feeds.values():
            state, age = self._state(f, now)
            if state != f.last_state:
                log.info("feed_state_changed", feed=f.feed_id, state=state, prev=f.last_state, age_s=age)
                f.last_state = state
            out[f.feed_id] = FeedStatus(f.feed_id, state, f.last_seen, age)
        return out

    def stale_keys(self, status: Optional[dict[str, FeedStatus]] = None) -> frozenset[MetricKey]:
        status = self.status() if status is None else status
        return frozenset(
            key for key, owners in self._key_feeds.items()
            if not any(status[fid].state == "ok" for fid in owners if fid in status)
        )

    @staticmethod
    def total_outage(status: dict[str, FeedStatus]) -> bool:
        """Every known feed is stale or down (and there is at least one feed)."""
        return bool(status) and all(s.state != "ok" for s in status.values())
