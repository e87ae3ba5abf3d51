from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Callable, Optional

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from gridwatch.config import FeedConfig
from gridwatch.errors import StoreInvariantViolation
from gridwatch.snapshot.health import FeedHealthTracker
from gridwatch.utils.time import utc_now_s

HEARTBEAT_TYPES = frozenset({"heartbeat", "ping", "info", "subscription", "success"})


class WsFeed:
    """
    Generic JSON WebSocket feed worker (one per source).

    Lifecycle:
      - Connect → (optional) Subscribe → Stream
      - On any error, close and reconnect with jittered backoff (cap)
      - Every inbound message counts as a heartbeat for the feed
      - Data messages (objects, or arrays of objects) are handed to `submit`

    Usage:
        feed = WsFeed(FeedConfig("spot", "wss://host/spot"), service.submit, service.health)
        await feed.start()   # runs until cancelled/stop() called
    """

    def __init__(
        self,
        cfg: FeedConfig,
        submit: Callable[..., Any],
        health: Optional[FeedHealthTracker] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.cfg = cfg
        self._submit = submit
        self.health = health
        self._clock = clock

        self._log = structlog.get_logger("ws_feed").bind(feed=cfg.feed_id)
        self._stop = asyncio.Event()
        self._last_msg_ts: float = 0.0
        self._ws = None

        self.connected: bool = False
        self.messages: int = 0
        self.reconnects: int = 0

        if self.health is not None:
            self.health.register(cfg.feed_id, cfg.staleness_s)

    # ---------------------------- public API ---------------------------- #

    async def start(self) -> None:
        backoff = self.cfg.initial_backoff_s
        while not self._stop.is_set():
            seen = self.messages
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self._stop.is_set():
                    break
                self._log.warning("ws_error_reconnect", err=str(e), backoff_s=round(backoff, 3))
            else:
                if self._stop.is_set():
                    break
                self._log.info("ws_stream_ended", backoff_s=round(backoff, 3))
            finally:
                self._mark_down()

            # a connection that delivered data resets the backoff
            if self.messages > seen:
                backoff = self.cfg.initial_backoff_s
            self.reconnects += 1
            await asyncio.sleep(self._jitter(backoff))
            backoff = min(backoff * 2.0, self.cfg.max_backoff_s)
        self._log.info("ws_loop_exit")

    async def stop(self) -> None:
        self._stop.set()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                self._log.debug("ws_close_error", err=str(e))
        self._mark_down()

    def last_message_age_s(self) -> float:
        return max(0.0, self._clock() - self._last_msg_ts) if self._last_msg_ts else float("inf")

    # --------------------------- core internals ------------------------- #

    async def _connect_and_stream(self) -> None:
        self._log.info("ws_connecting", url=self.cfg.url)
        async with ws_connect(
            self.cfg.url,
            open_timeout=self.cfg.open_timeout_s,
            ping_interval=self.cfg.ping_interval_s,
            ping_timeout=None,
            max_queue=None,
        ) as ws:
            self._ws = ws
            self.connected = True
            self._log.info("ws_connected")
            if self.cfg.subscribe_msg:
                await ws.send(json.dumps(dict(self.cfg.subscribe_msg)))
                self._log.info("ws_subscribed")
            await self._stream_loop(ws)

    async def _stream_loop(self, ws) -> None:
        while not self._stop.is_set():
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.cfg.staleness_s)
            except asyncio.TimeoutError:
                self._log.warning("ws_stale_no_messages", age_s=round(self.last_message_age_s(), 3))
                continue
            except ConnectionClosed as e:
                self._log.warning("ws_closed", code=e.rcvd.code if e.rcvd is not None else None, reason=str(e))
                raise
            except asyncio.CancelledError:
                self._log.info("ws_recv_cancelled")
                return

            self._on_raw(raw)

        self._log.info("ws_stream_loop_exit")

    def _on_raw(self, raw: str | bytes) -> None:
        now = self._clock()
        self._last_msg_ts = now
        self.messages += 1
        if self.health is not None:
            self.health.heartbeat(self.cfg.feed_id, now)

        try:
            msg = json.loads(raw)
        except ValueError as e:
            self._log.warning("ws_json_error", err=str(e))
            return
        batch = msg if isinstance(msg, list) else [msg]
        for m in batch:
            if isinstance(m, dict) and str(m.get("type", "")).lower() in HEARTBEAT_TYPES:
                continue
            if isinstance(m, dict) and str(m.get("type", "")).lower() == "error":
                self._log.warning("feed_error_message", msg=str(m)[:200])
                continue
            try:
                self._submit(m, source=self.cfg.feed_id)
            except StoreInvariantViolation as e:
                # fenced partition: keep streaming the other keys
                self._log.error("submit_fenced_partition", key=str(e.key), detail=e.detail)

    def _mark_down(self) -> None:
        self.connected = False
        if self.health is not None:
            self.health.mark_disconnected(self.cfg.feed_id)

    @staticmethod
    def _jitter(base: float) -> float:
        # ±20% jitter
        return base * (0.8 + 0.4 * random.random())
