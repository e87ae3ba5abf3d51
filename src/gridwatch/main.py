# src/gridwatch/main.py
import asyncio
import json
import os

import structlog
from dotenv import load_dotenv

from gridwatch.alerts.formatting import format_alert_pretty
from gridwatch.alerts.notifiers import ConsoleNotifier
from gridwatch.config import EngineConfig, config_from_env
from gridwatch.indicators.merit_order import GenerationUnit
from gridwatch.ingest.ws_feed import WsFeed
from gridwatch.notify.queue import NotifyQueue
from gridwatch.notify.telegram import TelegramNotifier
from gridwatch.service import AnalyticsService
from gridwatch.storage.redis_state import RedisStateStore
from gridwatch.utils.types import AlertEvent

load_dotenv()
log = structlog.get_logger()


# ---------------------------
# Utilities
# ---------------------------

def generation_units_from_env(service: AnalyticsService) -> None:
    """
    GENERATION_UNITS='{"PL/CEN": [{"unit_id": "belchatow-1", "capacity": 370, "marginal_cost": 310.0}]}'
    """
    raw = os.getenv("GENERATION_UNITS")
    if not raw:
        return
    for area, units in json.loads(raw).items():
        market, _, zone = area.partition("/")
        service.set_generation_units(market, zone, [GenerationUnit(**u) for u in units])
        log.info("generation_units_loaded", market=market, zone=zone, units=len(units))


async def notifier_router_loop(service: AnalyticsService, console: ConsoleNotifier, tg_q):
    """
    Consume alert events and fan out:
      - always print to console
      - if Telegram configured, enqueue to the Telegram notifier queue
    """
    while True:
        evt = await service.notify_q.get()
        if evt is None:
            continue
        await console.send(evt)
        if tg_q is not None:
            tg_q.try_put(evt)  # drop if full


async def stats_logger_loop(service: AnalyticsService, every_s: float = 60.0):
    while True:
        await asyncio.sleep(every_s)
        log.info("engine_stats", **service.stats())


# ---------------------------
# Main
# ---------------------------

async def main(cfg: EngineConfig | None = None):
    cfg = cfg or config_from_env()

    state = RedisStateStore(cfg.redis, cfg.store.retention_s) if cfg.redis.enabled else None
    service = AnalyticsService(cfg, state=state)
    generation_units_from_env(service)

    feeds = [WsFeed(f, service.submit, service.health) for f in cfg.feeds]
    if not feeds:
        log.warning("no_feeds_configured")

    # ----- Notifications -----
    fmt = lambda e: format_alert_pretty(e, cfg.alert_tz_name)  # noqa: E731
    console_notifier = ConsoleNotifier(format_fn=fmt)

    tg_notifier = None
    tg_q: NotifyQueue[AlertEvent] | None = None
    if cfg.telegram is not None:
        tg_q = NotifyQueue(maxsize=cfg.alerts.notify_queue_maxsize, name="telegram")
        tg_notifier = TelegramNotifier(cfg=cfg.telegram, alerts_queue=tg_q, format_fn=fmt)
        log.info("telegram_enabled")
    else:
        log.info("telegram_disabled_missing_env")

    # ----- Run everything -----
    tasks = [
        service.start(),
        *(f.start() for f in feeds),
        notifier_router_loop(service, console_notifier, tg_q),
        stats_logger_loop(service),
    ]
    if tg_notifier is not None:
        tasks.append(tg_notifier.start())

    try:
        await asyncio.gather(*tasks)
    finally:
        # graceful shutdown: feeds first so the store sees no more writes
        for f in feeds:
            await f.stop()
        await service.stop()
        if tg_notifier is not None:
            await tg_notifier.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
