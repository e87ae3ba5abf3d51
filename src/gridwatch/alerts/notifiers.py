from __future__ import annotations

import sys
from typing import Callable, Optional, TextIO

import structlog

from gridwatch.utils.types import AlertEvent

log = structlog.get_logger("notifier")


def plain_line(evt: AlertEvent) -> str:
    return (
        f"[ALERT] {evt.key} rule={evt.rule_id} {evt.metric}={evt.observed_value} "
        f"{evt.operator} {evt.threshold} at={evt.triggered_at:.0f}"
    )


class ConsoleNotifier:
    """Writes one line per AlertEvent; falls back to plain_line if the formatter breaks."""

    def __init__(
        self,
        format_fn: Optional[Callable[[AlertEvent], str]] = None,
        stream: Optional[TextIO] = None,
    ):
        self._format_fn = format_fn
        self._stream = stream
        self.delivered = 0

    async def send(self, evt: AlertEvent) -> None:
        text = None
        if self._format_fn is not None:
            try:
                text = self._format_fn(evt)
            except (ValueError, KeyError, TypeError) as e:
                log.warning("console_format_failed", rule_id=evt.rule_id, err=str(e))
        out = self._stream or sys.stdout
        out.write((text or plain_line(evt)) + "\n")
        out.flush()
        self.delivered += 1
