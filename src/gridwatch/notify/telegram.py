from __future__ import annotations

import asyncio
import html
import random
from typing import Callable, Literal, Optional

import aiohttp
import structlog

from gridwatch.alerts.formatting import format_alert_pretty
from gridwatch.config import TelegramConfig
from gridwatch.notify.queue import NotifyQueue
from gridwatch.utils.types import AlertEvent

log = structlog.get_logger("telegram")

Outcome = Literal["sent", "retry", "rejected"]


class RateLimiter:
    """Token bucket; acquire() waits for a token instead of failing."""

    def __init__(self, rate_per_sec: float, burst: int = 1, clock: Optional[Callable[[], float]] = None):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self.updated: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = self._clock()
            if self.updated is None:
                self.updated = now
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            if self.tokens < 1.0:
                await asyncio.sleep((1.0 - self.tokens) / self.rate)
                self.updated = self._clock()
                self.tokens = 1.0
            self.tokens -= 1.0


class TelegramNotifier:
    """
    Drains a NotifyQueue of AlertEvents into one Telegram chat.

    - one message per event, rate limited per chat
    - 429 honours retry_after, 5xx and network errors back off, other 4xx give up
    - with parse_mode="HTML" the rendered alert is escaped ("<" is an operator here)
    """

    def __init__(
        self,
        cfg: TelegramConfig,
        alerts_queue: NotifyQueue[AlertEvent],
        format_fn: Optional[Callable[[AlertEvent], str]] = None,
    ):
        self.cfg = cfg
        self.q = alerts_queue
        self._url = f"https://api.telegram.org/bot{cfg.bot_token}/sendMessage"
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._rl = RateLimiter(rate_per_sec=cfg.per_chat_rate_per_sec, burst=cfg.per_chat_burst)
        self._format_fn = format_fn or format_alert_pretty
        self.sent = 0
        self.failed = 0

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s))
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="telegram-notifier")

    async def stop(self):
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session:
            await self._session.close()
            self._session = None

    def render(self, evt: AlertEvent) -> str:
        text = self._format_fn(evt)
        return html.escape(text, quote=False) if self.cfg.parse_mode == "HTML" else text

    async def _loop(self):
        try:
            while not self._stop.is_set():
                evt = await self.q.get(timeout=1.0)
                if evt is None:
                    continue
                await self._rl.acquire()
                if await self.send_text(self.render(evt)):
                    self.sent += 1
                else:
                    self.failed += 1
                    log.warning("telegram_alert_undelivered", rule_id=evt.rule_id, key=str(evt.key))
        except asyncio.CancelledError:
            return

    async def send_text(self, text: str) -> bool:
        assert self._session is not None, "start() first"
        payload = {"chat_id": self.cfg.chat_id, "text": text}
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode

        backoff = self.cfg.initial_backoff_s
        for attempt in range(1, self.cfg.max_retries + 1):
            outcome, wait_s = await self._post(payload, attempt)
            if outcome == "sent":
                return True
            if outcome == "rejected":
                return False
            if attempt == self.cfg.max_retries:
                break
            if wait_s is None:
                wait_s = self._jitter(backoff)
                backoff = min(backoff * 2.0, self.cfg.max_backoff_s)
            await asyncio.sleep(wait_s)
        log.error("telegram_give_up_after_retries", attempts=self.cfg.max_retries)
        return False

    async def _post(self, payload: dict, attempt: int) -> tuple[Outcome, Optional[float]]:
        """One sendMessage call. The float is a server-requested wait (429 retry_after)."""
        try:
            async with self._session.post(self._url, data=payload) as resp:
                if resp.status == 200:
                    return "sent", None
                log.warning("telegram_send_failed", status=resp.status, body=await _maybe_text(resp), attempt=attempt)
                if resp.status == 429:
                    return "retry", await _retry_after(resp)
                if 500 <= resp.status < 600:
                    return "retry", None
                return "rejected", None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("telegram_network_error", err=str(e), attempt=attempt)
            return "retry", None

    @staticmethod
    def _jitter(base: float) -> float:
        return base * (0.8 + 0.4 * random.random())


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"


async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None
    ra = (data or {}).get("parameters", {}).get("retry_after")
    return float(ra) if ra else None
