from __future__ import annotations

import asyncio
import math
import uuid
from collections import deque
from dataclasses import dataclass, field, fields, replace
from typing import Deque, Dict, Iterable, Optional

import structlog

from gridwatch.alerts.rules import AlertRule
from gridwatch.alerts.state import RuleState
from gridwatch.config import AlertConfig
from gridwatch.errors import RuleEvalError
from gridwatch.indicators.engine import DerivedEngine
from gridwatch.indicators.registry import scalar_of
from gridwatch.utils.types import AlertEvent, AlertState, MetricKey, NoData, Window

log = structlog.get_logger("alerts")

_EDITABLE = frozenset(f.name for f in fields(AlertRule)) - {"rule_id"}


@dataclass(slots=True)
class AlertStats:
    evaluations: int = 0
    events: int = 0
    no_data: int = 0
    errors: int = 0
    events_dropped: int = 0


@dataclass(frozen=True, slots=True)
class RuleView:
    rule: AlertRule
    active: bool = True
    states: dict[MetricKey, AlertState] = field(default_factory=dict)
    last_triggered: Optional[float] = None     # None renders as "Never"


@dataclass(frozen=True, slots=True)
class _Reading:
    key: MetricKey
    value: float
    as_of: int


class AlertEvaluator:
    """
    Threshold rules with hysteresis and cooldown, one state machine per (rule, key).

    Armed -> Triggered on a fresh reading where the comparison holds (one AlertEvent),
    Triggered -> Cooldown immediately, Cooldown -> Armed once cooldown has elapsed
    and the reading is back past the hysteresis band.

    A reading is fresh when its as_of (end of the newest closed bucket in the
    rule's resolution) is newer than the last one this state consumed, so calling
    evaluate() again without new data emits nothing.
    """

    def __init__(
        self,
        derived: DerivedEngine,
        cfg: Optional[AlertConfig] = None,
        q_alerts: Optional[asyncio.Queue] = None,
    ):
        self.derived = derived
        self.cfg = cfg or AlertConfig()
        self.q_alerts = q_alerts
        self._rules: Dict[str, AlertRule] = {}
        self._states: Dict[tuple[str, MetricKey], RuleState] = {}
        self._events: Deque[AlertEvent] = deque(maxlen=self.cfg.event_history)
        self.stats = AlertStats()

    # --- rule management ---

    def create_rule(
        self,
        pattern: str,
        operator: str,
        threshold: float,
        *,
        hysteresis: float = 0.0,
        cooldown_s: float = 0.0,
        name: str = "",
        metric: str = "last",
        resolution: str = "1m",
        window_s: Optional[int] = None,
        rule_id: Optional[str] = None,
    ) -> str:
        rule = AlertRule(
            rule_id=rule_id or uuid.uuid4().hex[:12],
            pattern=pattern,
            operator=operator,  # type: ignore[arg-type]
            threshold=float(threshold),
            hysteresis=float(hysteresis),
            cooldown_s=float(cooldown_s),
            name=name,
            metric=metric,
            resolution=resolution,
            window_s=window_s,
        )
        return self.add_rule(rule)

    def add_rule(self, rule: AlertRule) -> str:
        rule.validate()
        if rule.rule_id in self._rules:
            raise ValueError(f"rule {rule.rule_id!r} already exists")
        self._rules[rule.rule_id] = rule
        log.info("alert_rule_created", rule_id=rule.rule_id, pattern=rule.pattern,
                 operator=rule.operator, threshold=rule.threshold)
        return rule.rule_id

    def remove_rule(self, rule_id: str) -> bool:
        if self._rules.pop(rule_id, None) is None:
            return False
        self._drop_states(rule_id)
        log.info("alert_rule_removed", rule_id=rule_id)
        return True

    def _drop_states(self, rule_id: str) -> None:
        for sk in [sk for sk in self._states if sk[0] == rule_id]:
            del self._states[sk]

    def update_rule(self, rule_id: str, **changes) -> Optional[AlertRule]:
        """
        Edit a rule in place and reset its (rule, key) state machines to Armed.
        Returns the new rule, or None if the id is unknown.
        """
        old = self._rules.get(rule_id)
        if old is None:
            return None
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValueError(f"cannot edit rule fields: {sorted(unknown)}")
        for name in ("threshold", "hysteresis", "cooldown_s"):
            if name in changes:
                changes[name] = float(changes[name])
        rule = replace(old, **changes).validate()
        self._rules[rule_id] = rule
        self._drop_states(rule_id)
        log.info("alert_rule_updated", rule_id=rule_id, fields=sorted(changes))
        return rule

    def set_rule_active(self, rule_id: str, active: bool) -> Optional[AlertRule]:
        """Toggle evaluation; per-key states are kept while a rule is inactive."""
        old = self._rules.get(rule_id)
        if old is None:
            return None
        rule = replace(old, active=bool(active))
        self._rules[rule_id] = rule
        log.info("alert_rule_active_set", rule_id=rule_id, active=rule.active)
        return rule

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[RuleView]:
        out: list[RuleView] = []
        for rule in self._rules.values():
            states = {st.key: st.state for (rid, _), st in self._states.items() if rid == rule.rule_id}
            fired = [st.last_triggered for (rid, _), st in self._states.items()
                     if rid == rule.rule_id and st.last_triggered is not None]
            out.append(RuleView(
                rule=rule, active=rule.active, states=states, last_triggered=max(fired) if fired else None,
            ))
        return out

    def list_events(
        self,
        rule_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> list[AlertEvent]:
        """Events oldest first; [start, end) on triggered_at."""
        return [
            e for e in self._events
            if (rule_id is None or e.rule_id == rule_id)
            and (start is None or e.triggered_at >= start)
            and (end is None or e.triggered_at < end)
        ]

    def state_of(self, rule_id: str, key: MetricKey) -> AlertState:
        st = self._states.get((rule_id, key))
        return st.state if st is not None else AlertState.ARMED

    # --- evaluation ---

    def evaluate(self, keys: Optional[Iterable[MetricKey]] = None) -> list[AlertEvent]:
        """
        Run every rule over the matching keys (all known keys when `keys` is None).
        A rule that fails is logged and skipped for this cycle; the rest still run.
        """
        candidates = list(keys) if keys is not None else self.derived.store.keys()
        emitted: list[AlertEvent] = []
        for rule in list(self._rules.values()):
            if not rule.active:
                continue
            matched = [k for k in candidates if rule.applies_to(k)]
            if not matched:
                continue
            try:
                readings = [r for r in (self._read(rule, k) for k in matched) if r is not None]
            except RuleEvalError as e:
                self.stats.errors += 1
                log.warning("rule_eval_error", rule_id=e.rule_id, key=str(e.key), err=str(e.cause))
                continue
            for r in readings:
                evt = self._step(rule, r)
                if evt is not None:
                    emitted.append(evt)
        return emitted

    def _read(self, rule: AlertRule, key: MetricKey) -> Optional[_Reading]:
        self.stats.evaluations += 1
        window = Window(rule.resolution, rule.window_s, include_open=False)
        try:
            res = self.derived.get(key, rule.metric, window)
            if isinstance(res, NoData):
                self.stats.no_data += 1
                return None
            value = scalar_of(res.value)
        except Exception as e:
            raise RuleEvalError(rule.rule_id, key, e) from e
        if not math.isfinite(value):
            raise RuleEvalError(rule.rule_id, key, ValueError(f"non-finite reading {value}"))
        return _Reading(key, value, res.as_of)

    def _step(self, rule: AlertRule, r: _Reading) -> Optional[AlertEvent]:
        sk = (rule.rule_id, r.key)
        st = self._states.get(sk)
        if st is None:
            st = RuleState(rule_id=rule.rule_id, key=r.key)
            self._states[sk] = st

        if st.last_reading_ts is not None and r.as_of <= st.last_reading_ts:
            return None
        st.last_reading_ts = r.as_of
        st.last_value = r.value

        if st.state is AlertState.COOLDOWN:
            if st.cooldown_until is not None and r.as_of < st.cooldown_until:
                return None
            if not rule.is_safe(r.value, self.cfg.eq_tolerance):
                return None
            st.state = AlertState.ARMED
            log.info("alert_rearmed", rule_id=rule.rule_id, key=str(r.key), value=r.value)

        if st.state is AlertState.ARMED and rule.holds(r.value, self.cfg.eq_tolerance):
            st.state = AlertState.TRIGGERED
            evt = AlertEvent(
                rule_id=rule.rule_id,
                key=r.key,
                observed_value=r.value,
                triggered_at=float(r.as_of),
                rule_name=rule.name,
                operator=rule.operator,
                threshold=rule.threshold,
                metric=rule.metric,
            )
            st.last_triggered = evt.triggered_at
            st.trigger_count += 1
            st.cooldown_until = r.as_of + rule.cooldown_s
            st.state = AlertState.COOLDOWN
            self._emit(evt)
            return evt
        return None

    def _emit(self, evt: AlertEvent) -> None:
        self._events.append(evt)
        self.stats.events += 1
        log.info("alert_triggered", rule_id=evt.rule_id, key=str(evt.key), value=evt.observed_value)
        if self.q_alerts is None:
            return
        try:
            self.q_alerts.put_nowait(evt)
        except asyncio.QueueFull:
            self.stats.events_dropped += 1
            log.warning("alert_queue_full", rule_id=evt.rule_id, key=str(evt.key))
