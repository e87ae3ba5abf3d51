from __future__ import annotations

from typing import Any, Optional

from gridwatch.utils.types import MetricKey


class GridwatchError(Exception):
    pass


class MalformedTick(GridwatchError):
    """Raw feed message that can't become a Tick. Dropped and counted, never propagated."""
    def __init__(self, reason: str, raw: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class LateTick(GridwatchError):
    """Tick behind the key's lateness watermark. Dropped and counted."""
    def __init__(self, key: MetricKey, ts: float, watermark: float):
        super().__init__(f"{key} tick at {ts} is behind watermark {watermark}")
        self.key = key
        self.ts = ts
        self.watermark = watermark


class StoreInvariantViolation(GridwatchError):
    """
    Ring/bucket invariant broken. The partition is fenced and refuses writes
    until an operator intervenes.
    """
    def __init__(self, key: Optional[MetricKey], resolution: Optional[str], detail: str):
        super().__init__(f"{key} [{resolution}]: {detail}")
        self.key = key
        self.resolution = resolution
        self.detail = detail


class RuleEvalError(GridwatchError):
    def __init__(self, rule_id: str, key: MetricKey, cause: BaseException | str):
        super().__init__(f"rule {rule_id} on {key}: {cause}")
        self.rule_id = rule_id
        self.key = key
        self.cause = cause
