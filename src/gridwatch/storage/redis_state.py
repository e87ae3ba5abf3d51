# src/gridwatch/storage/redis_state.py
from __future__ import annotations

import asyncio
import json
import math
from typing import Any, Dict, Mapping, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from gridwatch.alerts.rules import AlertRule
from gridwatch.config import DEFAULT_RETENTION_S, RedisConfig
from gridwatch.data.ring_buffer import BucketRow
from gridwatch.data.store import TimeSeriesStore
from gridwatch.notify.queue import NotifyQueue
from gridwatch.utils.types import RESOLUTIONS, MetricKey

log = structlog.get_logger("redis_state")

RULES_HASH = "gridwatch:rules"
FIELDS = ("O", "H", "L", "C", "V", "VWS", "N")


def series_key(key: MetricKey, resolution: str, field: str) -> str:
    # ts:{market}:{zone}:{metric}:{res}:{FIELD}
    return f"ts:{key.market}:{key.zone}:{key.metric}:{resolution}:{field}"


def parse_series_key(k: str) -> tuple[MetricKey, str, str]:
    parts = k.split(":")
    if len(parts) != 6 or parts[0] != "ts":
        raise ValueError(f"not a gridwatch series key: {k!r}")
    _, market, zone, metric, res, field = parts
    return MetricKey(market, zone, metric), res, field


def _row_values(row: BucketRow) -> dict[str, float]:
    return {"O": row.o, "H": row.h, "L": row.l, "C": row.c, "V": row.vol, "VWS": row.vws, "N": float(row.n)}


class RedisStateStore:
    """
    Durable state in Redis: rule definitions (hash of JSON) and frozen buckets
    (RedisTimeSeries, one series per field). Writes are best-effort and go
    through a bounded queue drained by one background task; a full queue drops.
    """

    def __init__(self, cfg: RedisConfig, retention_s: Mapping[str, int] = DEFAULT_RETENTION_S):
        self.cfg = cfg
        self.retention_s = retention_s
        self.enabled = cfg.enabled
        self._r: Optional[Any] = None
        self._q: NotifyQueue[tuple] = NotifyQueue(maxsize=cfg.mirror_queue_maxsize, name="redis_mirror")
        self._task: Optional[asyncio.Task] = None
        self._created: set[str] = set()
        self.write_errors = 0

    async def start(self):
        if not self.enabled or self._r is not None:
            return
        self._r = redis.from_url(self.cfg.url, decode_responses=True)
        self._task = asyncio.create_task(self._writer_loop(), name="redis-state")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._r is not None:
            await self._r.aclose()
            self._r = None

    # ---- enqueue (never blocks) ----

    def mirror_bucket(self, key: MetricKey, resolution: str, row: BucketRow) -> bool:
        if not self.enabled:
            return False
        return self._q.try_put(("bucket", key, resolution, row))

    def save_rule(self, rule: AlertRule) -> bool:
        if not self.enabled:
            return False
        return self._q.try_put(("rule_save", rule.rule_id, json.dumps(rule.to_dict())))

    def delete_rule(self, rule_id: str) -> bool:
        if not self.enabled:
            return False
        return self._q.try_put(("rule_del", rule_id))

    # ---- writer ----

    async def _writer_loop(self):
        assert self._r is not None
        try:
            while True:
                item = await self._q.get()
                try:
                    await self._write(item)
                except RedisError as e:
                    self.write_errors += 1
                    log.warning("redis_write_failed", op=item[0], err=str(e))
        except asyncio.CancelledError:
            return

    async def _write(self, item: tuple) -> None:
        r = self._r
        op = item[0]
        if op == "rule_save":
            await r.hset(RULES_HASH, item[1], item[2])
            return
        if op == "rule_del":
            await r.hdel(RULES_HASH, item[1])
            return

        _, key, res, row = item
        ts_ms = int(row.epoch) * 1000   # RTS uses milliseconds
        retention_ms = int(self.retention_s.get(res, RESOLUTIONS[res])) * 1000
        p = r.pipeline()
        for field, val in _row_values(row).items():
            k = series_key(key, res, field)
            if k not in self._created:
                p.execute_command(
                    "TS.CREATE", k, "RETENTION", retention_ms, "DUPLICATE_POLICY", "LAST",
                    "LABELS", "app", "gridwatch", "market", key.market, "zone", key.zone,
                    "metric", key.metric, "res", res, "field", field,
                )
                self._created.add(k)
            if math.isfinite(val):
                p.execute_command("TS.ADD", k, ts_ms, val)
        # TS.CREATE on an existing series errors; that is expected here
        await p.execute(raise_on_error=False)

    # ---- reads (start-up restore) ----

    async def load_rules(self) -> list[AlertRule]:
        r = self._require()
        raw = await r.hgetall(RULES_HASH)
        out: list[AlertRule] = []
        for rule_id, blob in raw.items():
            try:
                out.append(AlertRule.from_dict(json.loads(blob)))
            except (ValueError, KeyError, TypeError) as e:
                log.warning("rule_load_skipped", rule_id=rule_id, err=str(e))
        return out

    async def load_buckets(self, key: MetricKey, resolution: str) -> list[BucketRow]:
        """Rows whose every field is present, oldest first."""
        r = self._require()
        cols: Dict[str, Dict[int, float]] = {}
        for field in FIELDS:
            pts = await r.execute_command("TS.RANGE", series_key(key, resolution, field), "-", "+")
            cols[field] = {int(ts): float(v) for ts, v in (pts or [])}
        common = set(cols["C"])
        for field in FIELDS:
            common &= set(cols[field])
        return [
            BucketRow(
                epoch=ts // 1000,
                o=cols["O"][ts], h=cols["H"][ts], l=cols["L"][ts], c=cols["C"][ts],
                vol=cols["V"][ts], vws=cols["VWS"][ts], n=int(cols["N"][ts]),
            )
            for ts in sorted(common)
        ]

    async def series(self) -> list[tuple[MetricKey, str]]:
        """(key, resolution) pairs that have a close series in Redis."""
        r = self._require()
        keys = await r.execute_command("TS.QUERYINDEX", "app=gridwatch", "field=C")
        out: list[tuple[MetricKey, str]] = []
        for k in keys or []:
            try:
                mk, res, _ = parse_series_key(k)
            except ValueError:
                continue
            if res in RESOLUTIONS:
                out.append((mk, res))
        return out

    async def restore_into(self, store: TimeSeriesStore) -> int:
        """Reload every mirrored bucket ring into `store`. Returns buckets loaded."""
        loaded = 0
        for key, res in await self.series():
            rows = await self.load_buckets(key, res)
            if rows:
                loaded += store.restore(key, res, rows)
        log.info("buckets_restored", buckets=loaded)
        return loaded

    def _require(self):
        if self._r is None:
            raise RuntimeError("RedisStateStore not started")
        return self._r
