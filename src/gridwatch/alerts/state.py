from __future__ import annotations
from dataclasses import dataclass

from gridwatch.utils.types import AlertState, MetricKey


@dataclass(slots=True)
class RuleState:
    """State machine for one (rule, key) pair. Lives in the engine's arena, keyed by identity."""
    rule_id: str
    key: MetricKey
    state: AlertState = AlertState.ARMED
    last_reading_ts: int | None = None   # as_of of the last reading consumed
    last_value: float | None = None      # for observability
    last_triggered: float | None = None
    cooldown_until: float | None = None
    trigger_count: int = 0
