# src/gridwatch/alerts/rules.py
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Optional

from gridwatch.indicators.registry import get_calculator
from gridwatch.utils.types import MetricKey, Operator, resolution_seconds

OPERATORS: tuple[str, ...] = (">", "<", "=")


@dataclass(frozen=True, slots=True)
class AlertRule:
    """
    Threshold rule over one derived metric of every key matching `pattern`.
    - operator ">" fires when value > threshold, re-arms once value < threshold - hysteresis
               "<" fires when value < threshold, re-arms once value > threshold + hysteresis
               "=" fires when |value - threshold| <= tolerance, re-arms once |value - threshold| > max(hysteresis, tolerance)
    - cooldown_s must also elapse (reading time) before re-arming
    - inactive rules are kept (and persisted) but not evaluated
    """
    rule_id: str
    pattern: str                        # "PL/*/spot-price" or an exact key
    operator: Operator
    threshold: float
    hysteresis: float = 0.0
    cooldown_s: float = 0.0
    name: str = ""
    metric: str = "last"                # derived kind the rule reads
    resolution: str = "1m"
    window_s: Optional[int] = None      # lookback for windowed kinds (vwap, spread, ...)
    active: bool = True

    def validate(self) -> "AlertRule":
        if self.operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {self.operator!r}")
        if len(self.pattern.split("/")) != 3:
            raise ValueError(f"Rule pattern must look like market/zone/metric, got {self.pattern!r}")
        if self.hysteresis < 0 or self.cooldown_s < 0:
            raise ValueError("hysteresis and cooldown must be >= 0")
        if self.window_s is not None and self.window_s <= 0:
            raise ValueError("window_s must be positive")
        resolution_seconds(self.resolution)
        get_calculator(self.metric)
        return self

    def applies_to(self, key: MetricKey) -> bool:
        return key.matches(self.pattern)

    def holds(self, value: float, tolerance: float = 0.0) -> bool:
        if self.operator == ">":
            return value > self.threshold
        if self.operator == "<":
            return value < self.threshold
        return abs(value - self.threshold) <= tolerance

    def is_safe(self, value: float, tolerance: float = 0.0) -> bool:
        """True once the value sits past the hysteresis band on the non-firing side."""
        if self.operator == ">":
            return value < self.threshold - self.hysteresis
        if self.operator == "<":
            return value > self.threshold + self.hysteresis
        # re-arm band lies strictly outside the firing band
        return abs(value - self.threshold) > max(self.hysteresis, tolerance)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AlertRule":
        return cls(
            rule_id=str(d["rule_id"]),
            pattern=str(d["pattern"]),
            operator=d["operator"],
            threshold=float(d["threshold"]),
            hysteresis=float(d.get("hysteresis", 0.0)),
            cooldown_s=float(d.get("cooldown_s", 0.0)),
            name=str(d.get("name", "")),
            metric=str(d.get("metric", "last")),
            resolution=str(d.get("resolution", "1m")),
            window_s=int(d["window_s"]) if d.get("window_s") is not None else None,
            active=bool(d.get("active", True)),
        ).validate()
