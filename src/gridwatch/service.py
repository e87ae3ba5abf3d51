from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable, Optional, Union

import structlog

from gridwatch.alerts.evaluator import AlertEvaluator, RuleView
from gridwatch.alerts.rules import AlertRule
from gridwatch.config import EngineConfig
from gridwatch.data.ring_buffer import BucketRow
from gridwatch.data.store import CloseEvent, TimeSeriesStore
from gridwatch.errors import MalformedTick, StoreInvariantViolation
from gridwatch.indicators.engine import DerivedEngine
from gridwatch.indicators.merit_order import GenerationUnit
from gridwatch.ingest.normalizer import Normalizer
from gridwatch.notify.queue import NotifyQueue
from gridwatch.snapshot.health import FeedHealthTracker
from gridwatch.snapshot.service import SnapshotService, Subscription, SubscriptionFilter
from gridwatch.storage.redis_state import RedisStateStore
from gridwatch.utils.time import utc_now_s
from gridwatch.utils.types import (
    AlertEvent,
    Bucket,
    DerivedMetric,
    MetricKey,
    NoData,
    Snapshot,
    Window,
    resolution_seconds,
)

log = structlog.get_logger("service")

KeyLike = Union[MetricKey, str]


@dataclass(slots=True)
class IngestStats:
    accepted: int = 0
    malformed: int = 0
    late: int = 0
    slow: int = 0
    fenced: int = 0


def _as_key(key: KeyLike) -> MetricKey:
    return key if isinstance(key, MetricKey) else MetricKey.parse(key)


class AnalyticsService:
    """
    One engine instance: normalizer → store → (derived, alerts) → snapshots.

    submit() is the ingestion hot path and only touches the normalizer and the
    store. Bucket closes are drained by a background worker that invalidates
    derived caches, runs the alert rules and then rebuilds the snapshot, so a
    snapshot always reflects the alert pass for the buckets it shows.
    """

    def __init__(
        self,
        cfg: Optional[EngineConfig] = None,
        *,
        state: Optional[RedisStateStore] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.cfg = cfg or EngineConfig()
        self._clock = clock
        self.q_closed: asyncio.Queue[CloseEvent] = asyncio.Queue(maxsize=self.cfg.store.close_queue_maxsize)

        self.normalizer = Normalizer(self.cfg.normalizer, clock=clock)
        self.store = TimeSeriesStore(self.cfg.store, self.q_closed, clock=clock)
        self.derived = DerivedEngine(self.store, self.cfg.derived)
        self.alerts = AlertEvaluator(self.derived, self.cfg.alerts)
        self.health = FeedHealthTracker(self.cfg.snapshot, self.cfg.feeds, clock=clock)
        self.snapshots = SnapshotService(
            self.store, self.derived, self.health, self.cfg.snapshot, clock=clock, hold=self.closes_pending,
        )
        self.notify_q: NotifyQueue[AlertEvent] = NotifyQueue(self.cfg.alerts.notify_queue_maxsize, name="alerts")
        self.state = state

        self.ingest_stats = IngestStats()
        self._closes_consumed = 0
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted state (if any), then run background loops until stop()."""
        if self.state is not None and self.state.enabled:
            await self.state.start()
            await self.restore()
        self.snapshots.rebuild()
        await asyncio.gather(
            self.store.start(),
            self._close_worker(),
            self.snapshots.start(),
        )

    async def stop(self) -> None:
        self._stop.set()
        await self.store.stop()
        await self.snapshots.stop()
        if self.state is not None:
            await self.state.stop()

    async def restore(self) -> None:
        if self.state is None:
            raise RuntimeError("no state store configured")
        for rule in await self.state.load_rules():
            if self.alerts.get_rule(rule.rule_id) is None:
                self.alerts.add_rule(rule)
        await self.state.restore_into(self.store)
        self.derived.refresh()
        log.info("state_restored", rules=len(self.alerts.list_rules()), keys=len(self.store.keys()))

    # ------------------------------------------------------------------
    # ingress
    # ------------------------------------------------------------------

    def submit(self, raw: Any, source: Optional[str] = None) -> bool:
        """
        Normalize and ingest one raw feed message. Returns True when the tick
        changed the store. Malformed and late ticks are counted, not raised;
        StoreInvariantViolation (fenced partition) propagates.
        """
        t0 = time.perf_counter()
        try:
            tick = self.normalizer.normalize(raw, source=source)
        except MalformedTick as e:
            self.ingest_stats.malformed += 1
            log.info("malformed_tick", reason=e.reason, source=source, snippet=str(raw)[:200])
            return False

        if source is not None:
            self.health.heartbeat(source)
            self.health.bind_key(source, tick.key)

        try:
            applied = self.store.ingest(tick)
        except StoreInvariantViolation:
            self.ingest_stats.fenced += 1
            raise

        if applied:
            self.ingest_stats.accepted += 1
        else:
            self.ingest_stats.late += 1

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if elapsed_ms > self.cfg.tick_latency_budget_ms:
            self.ingest_stats.slow += 1
            log.warning("slow_tick", key=str(tick.key), elapsed_ms=round(elapsed_ms, 3),
                        budget_ms=self.cfg.tick_latency_budget_ms)
        return applied

    # ------------------------------------------------------------------
    # egress
    # ------------------------------------------------------------------

    def get_series(
        self,
        key: KeyLike,
        resolution: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        include_open: bool = True,
    ) -> list[Bucket]:
        resolution_seconds(resolution)
        return self.store.query(_as_key(key), resolution, start, end, include_open=include_open)

    def get_derived(self, key: KeyLike, kind: str, window: Optional[Window] = None) -> Union[DerivedMetric, NoData]:
        return self.derived.get(_as_key(key), kind, window)

    def current_snapshot(self) -> Snapshot:
        return self.snapshots.current()

    def subscribe(self, filt: Optional[SubscriptionFilter] = None) -> Subscription:
        return self.snapshots.subscribe(filt)

    def unsubscribe(self, sub: Subscription) -> None:
        self.snapshots.unsubscribe(sub)

    def set_generation_units(self, market: str, zone: str, units: Iterable[GenerationUnit]) -> None:
        self.derived.set_generation_units(market, zone, units)

    # ------------------------------------------------------------------
    # alert management
    # ------------------------------------------------------------------

    def create_rule(self, pattern: str, operator: str, threshold: float, **options: Any) -> str:
        rule_id = self.alerts.create_rule(pattern, operator, threshold, **options)
        if self.state is not None:
            self.state.save_rule(self.alerts.get_rule(rule_id))
        return rule_id

    def update_rule(self, rule_id: str, **changes: Any) -> Optional[AlertRule]:
        rule = self.alerts.update_rule(rule_id, **changes)
        if rule is not None and self.state is not None:
            self.state.save_rule(rule)
        return rule

    def set_rule_active(self, rule_id: str, active: bool) -> Optional[AlertRule]:
        rule = self.alerts.set_rule_active(rule_id, active)
        if rule is not None and self.state is not None:
            self.state.save_rule(rule)
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        removed = self.alerts.remove_rule(rule_id)
        if removed and self.state is not None:
            self.state.delete_rule(rule_id)
        return removed

    def list_rules(self) -> list[RuleView]:
        return self.alerts.list_rules()

    def list_events(
        self,
        rule_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> list[AlertEvent]:
        return self.alerts.list_events(rule_id, start, end)

    def stats(self) -> dict[str, dict[str, Any]]:
        return {
            "ingest": asdict(self.ingest_stats),
            "store": asdict(self.store.stats),
            "derived": asdict(self.derived.stats),
            "alerts": asdict(self.alerts.stats),
            "snapshot": asdict(self.snapshots.stats),
            "notify": asdict(self.notify_q.stats),
        }

    # ------------------------------------------------------------------
    # background work
    # ------------------------------------------------------------------

    def process_closed(self, batch: list[CloseEvent]) -> list[AlertEvent]:
        """Handle a batch of bucket-close events: derived refresh, alerts, mirror, snapshot."""
        self._closes_consumed += len(batch)
        keys = {key for key, _, _ in batch}
        self.derived.refresh(keys)
        events = self.alerts.evaluate(keys)
        for evt in events:
            self.notify_q.try_put(evt)
        if self.state is not None:
            for key, res, start in batch:
                for b in self.store.query(key, res, start, start + 1, include_open=False):
                    if b.start == start:
                        self.state.mirror_bucket(key, res, _bucket_row(b))
        self.snapshots.rebuild()
        return events

    def closes_pending(self) -> bool:
        """True while the store has emitted bucket closes the alert pass has not consumed."""
        st = self.store.stats
        return st.buckets_closed - st.close_events_dropped > self._closes_consumed

    async def _close_worker(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    first = await asyncio.wait_for(self.q_closed.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                batch = [first]
                while not self.q_closed.empty():
                    batch.append(self.q_closed.get_nowait())
                try:
                    self.process_closed(batch)
                except Exception as e:
                    log.error("close_worker_error", err=str(e), events=len(batch), exc_info=True)
        except asyncio.CancelledError:
            return


def _bucket_row(b: Bucket) -> BucketRow:
    return BucketRow(b.start, b.open, b.high, b.low, b.close, b.volume_sum, b.value_weighted_sum, b.count)
