from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

from gridwatch.utils.types import AlertEvent


def _fmt_ts(ts_s: float, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(int(ts_s), tz).strftime("%Y-%m-%d %H:%M:%S %Z")  # e.g., 2025-01-14 18:05:00 CET


def format_alert_pretty(evt: AlertEvent, tz_name: str = "UTC") -> str:
    label = evt.rule_name or evt.rule_id
    when = _fmt_ts(evt.triggered_at, tz_name)
    arrow = {">": "↑", "<": "↓"}.get(evt.operator, "=")
    return (
        f"[{evt.key}] {when} {arrow} {label}: "
        f"{evt.metric} {evt.observed_value:.2f} {evt.operator} {evt.threshold:.2f}"
    )
