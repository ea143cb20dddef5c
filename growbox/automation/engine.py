"""Automation engine: one evaluation tick from snapshot to history.

Per tick
--------
1. Capture one immutable sensor snapshot and a consistent copy of the rules.
2. Evaluate every enabled rule against that snapshot (pure, no I/O). A rule
   that raises is recorded as ``errored`` and skipped; the rest continue.
3. Drop rules whose dependencies are inactive, that conflict with a rule
   that fired recently, or that are cooling down or at their execution limit.
4. Resolve conflicts to one command per device, by priority.
5. Dispatch the winners concurrently.
6. Advance trigger bookkeeping for rules whose commands were attempted and
   write a history event for every matched rule.

The engine never starts a tick while another one is in flight; an
overlapping request is skipped and counted.

Usage
-----
>>> engine = AutomationEngine(store, sensors, ActionExecutor(channel), TriggerHistory())
>>> report = await engine.tick()
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from loguru import logger

from growbox.automation.commands import DeviceCommand, DispatchResult, DispatchStatus
from growbox.automation.cooldown import CooldownTracker
from growbox.automation.evaluator import evaluate_rule
from growbox.automation.executor import ActionExecutor
from growbox.automation.history import Outcome, TriggerEvent, TriggerHistory
from growbox.automation.models import Action, Branch, Rule
from growbox.automation.resolver import Bid, Candidate, resolve
from growbox.automation.sensors import SensorCache, SensorSnapshot, SnapshotUnavailable
from growbox.automation.store import RuleNotFoundError, RuleStore

# A rule listed in conflicts_with blocks this one for this long after it fires.
CONFLICT_WINDOW_SECONDS = 60


class TickPhase(str, Enum):
    IDLE = "idle"
    SNAPSHOT_CAPTURED = "snapshot_captured"
    RULES_EVALUATED = "rules_evaluated"
    CONFLICTS_RESOLVED = "conflicts_resolved"
    ACTIONS_DISPATCHED = "actions_dispatched"
    HISTORY_WRITTEN = "history_written"


@dataclass
class TickReport:
    """Summary of one completed tick."""
    timestamp: datetime
    evaluated: int = 0
    candidates: int = 0
    results: list[DispatchResult] = field(default_factory=list)
    events: list[TriggerEvent] = field(default_factory=list)
    fired_rules: list[str] = field(default_factory=list)

    @property
    def commands(self) -> list[DeviceCommand]:
        return [r.command for r in self.results]

    def outcomes(self, rule_id: str) -> list[str]:
        return [_plain(e.outcome) for e in self.events if e.rule_id == rule_id]


class AutomationEngine:
    """Evaluates the rule set against sensor snapshots and drives actuators.

    Parameters
    ----------
    store:
        Rule store; read once per tick through ``snapshot()``.
    sensors:
        Sensor cache; captured once per tick.
    executor:
        Action executor wrapping the device channel.
    history:
        Trigger history sink.
    clock:
        Local wall-clock source used when ``tick()`` gets no explicit time.
    """

    def __init__(
        self,
        store: RuleStore,
        sensors: SensorCache,
        executor: ActionExecutor,
        history: TriggerHistory,
        *,
        cooldown: CooldownTracker | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.sensors = sensors
        self.executor = executor
        self.history = history
        self.cooldown = cooldown or CooldownTracker()
        self._clock = clock
        self._phase = TickPhase.IDLE
        self.ticks_run = 0
        self.ticks_skipped = 0
        self.last_tick_at: datetime | None = None
        self.last_snapshot: SensorSnapshot | None = None

    @property
    def phase(self) -> TickPhase:
        return self._phase

    @property
    def busy(self) -> bool:
        return self._phase is not TickPhase.IDLE

    # -- tick ----------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickReport | None:
        """Run one evaluation tick.

        Returns ``None`` when the tick was skipped (another tick in flight
        or no usable sensor snapshot).
        """
        if self.busy:
            self.ticks_skipped += 1
            logger.warning("[Engine] tick skipped: previous tick still in phase '{}'", self._phase.value)
            return None

        now = now or self._clock()
        try:
            try:
                snapshot = self.sensors.capture(now)
            except SnapshotUnavailable as exc:
                self.ticks_skipped += 1
                logger.warning("[Engine] tick skipped: {}", exc)
                return None
            self._phase = TickPhase.SNAPSHOT_CAPTURED
            self.last_snapshot = snapshot
            rules = await self.store.snapshot()
            return await self._run(rules, snapshot, now)
        finally:
            self._phase = TickPhase.IDLE

    async def _run(self, rules: list[Rule], snapshot: SensorSnapshot, now: datetime) -> TickReport:
        report = TickReport(timestamp=now)
        events: list[TriggerEvent] = []
        candidates: list[Candidate] = []

        rules_by_id = {r.id: r for r in rules}
        self.cooldown.prune(rules_by_id)

        for rule in sorted(rules, key=lambda r: r.id):
            if not rule.enabled:
                continue
            report.evaluated += 1
            candidate = self._classify(rule, snapshot, now, events, rules_by_id)
            if candidate is not None:
                candidates.append(candidate)
        self._phase = TickPhase.RULES_EVALUATED
        report.candidates = len(candidates)

        resolution = resolve(candidates)
        self._phase = TickPhase.CONFLICTS_RESOLVED

        results = await self.executor.dispatch(resolution.commands)
        cancelled = self.executor.cancelled
        self._phase = TickPhase.ACTIONS_DISPATCHED
        report.results = results
        by_device = {r.command.device: r for r in results}

        fired: dict[str, datetime] = {}
        for cand in candidates:
            rule = cand.rule
            lost = resolution.overridden_for(rule.id)
            if lost:
                events.append(self._event(rule, now, Outcome.OVERRIDDEN, cand.branch, lost))
                logger.debug(
                    "[Engine] rule '{}' overridden on {}", rule.id, sorted({b.command.device for b in lost}),
                )

            won = resolution.winners_for(rule.id)
            if not won:
                continue
            for status, outcome in (
                (DispatchStatus.OK, Outcome.FIRED),
                (DispatchStatus.ERROR, Outcome.FAILED),
                (DispatchStatus.UNKNOWN, Outcome.UNKNOWN),
            ):
                group = [b for b in won if by_device[b.command.device].status == status]
                if not group:
                    continue
                errors = [by_device[b.command.device].error for b in group]
                detail = "; ".join(e for e in errors if e) or None
                events.append(self._event(rule, now, outcome, cand.branch, group, detail))

            if any(by_device[b.command.device].attempted for b in won):
                fired[rule.id] = now
                self.cooldown.record(rule.id, now)
                logger.info(
                    "[Engine] rule '{}' ({}) fired {} branch: {}",
                    rule.name, rule.id, _plain(cand.branch),
                    ", ".join(b.command.describe() for b in won),
                )

        await self.store.record_triggers(fired)
        self.history.extend(events)
        self._phase = TickPhase.HISTORY_WRITTEN

        report.events = events
        report.fired_rules = list(fired)
        self.ticks_run += 1
        self.last_tick_at = now

        if cancelled:
            raise asyncio.CancelledError()
        return report

    def _classify(
        self,
        rule: Rule,
        snapshot: SensorSnapshot,
        now: datetime,
        events: list[TriggerEvent],
        rules_by_id: Mapping[str, Rule],
    ) -> Candidate | None:
        """Evaluate one rule; return it as a candidate or record why not."""
        try:
            evaluation = evaluate_rule(rule, snapshot, now)
        except Exception as exc:
            logger.error("[Engine] rule '{}' raised during evaluation: {!r}", rule.id, exc)
            events.append(self._event(rule, now, Outcome.ERRORED, detail=repr(exc)))
            return None

        if evaluation.branch is None:
            return None
        actions = evaluation.actions_for(rule)

        blocked = self._gate(rule, now, rules_by_id)
        if blocked is not None:
            outcome, detail = blocked
            events.append(self._event(rule, now, outcome, evaluation.branch, actions, detail=detail))
            return None
        if rule.dry_run:
            events.append(self._event(rule, now, Outcome.SIMULATED, evaluation.branch, actions))
            return None
        if self.cooldown.limit_reached(rule):
            events.append(self._event(
                rule, now, Outcome.SUPPRESSED_LIMIT, evaluation.branch, actions,
                detail=f"max_executions={rule.max_executions} reached",
            ))
            return None
        if not self.cooldown.allow(rule, now):
            remaining = self.cooldown.remaining(rule, now)
            logger.debug(
                "[Engine] rule '{}' suppressed (cooldown: {:.0f}s left of {}s)",
                rule.id, remaining, rule.cooldown_seconds,
            )
            events.append(self._event(
                rule, now, Outcome.SUPPRESSED_COOLDOWN, evaluation.branch, actions,
                detail=f"{remaining:.0f}s remaining",
            ))
            return None
        return Candidate(rule=rule, branch=evaluation.branch, actions=actions)

    def _gate(
        self,
        rule: Rule,
        now: datetime,
        rules_by_id: Mapping[str, Rule],
    ) -> tuple[Outcome, str] | None:
        """Check ``depends_on``/``conflicts_with`` against this tick's rules."""
        for dep_id in rule.depends_on:
            dep = rules_by_id.get(dep_id)
            if dep is None or not dep.enabled:
                logger.debug("[Engine] rule '{}' skipped: dependency '{}' not active", rule.id, dep_id)
                return Outcome.SUPPRESSED_DEPENDENCY, f"dependency '{dep_id}' is not active"
        for other_id in rule.conflicts_with:
            other = rules_by_id.get(other_id)
            if (
                other is not None
                and other.enabled
                and self.cooldown.fired_within(other, now, CONFLICT_WINDOW_SECONDS)
            ):
                logger.debug("[Engine] rule '{}' skipped: conflicts with '{}'", rule.id, other_id)
                return (
                    Outcome.SUPPRESSED_CONFLICT,
                    f"conflicting rule '{other_id}' fired within {CONFLICT_WINDOW_SECONDS}s",
                )
        return None

    @staticmethod
    def _event(
        rule: Rule,
        now: datetime,
        outcome: Outcome,
        branch: Branch | None = None,
        items: list[Action] | list[Bid] | None = None,
        detail: str | None = None,
    ) -> TriggerEvent:
        actions = []
        for item in items or []:
            actions.append(item.command.to_dict() if isinstance(item, Bid) else item.to_dict())
        return TriggerEvent(
            rule_id=rule.id,
            rule_name=rule.name,
            timestamp=now,
            outcome=outcome,
            branch=branch,
            actions=actions,
            detail=detail,
        )

    # -- simulation / status -------------------------------------------------

    def simulate(
        self,
        rule_id: str,
        readings: Mapping[str, float] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Dry-run one rule without dispatching or writing history.

        Uses *readings* when given, otherwise the current sensor cache.
        Raises ``RuleNotFoundError`` for unknown rules and
        ``SnapshotUnavailable`` when no readings are available.
        """
        rule = self.store.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        now = now or self._clock()
        snapshot = SensorSnapshot(readings, now) if readings is not None else self.sensors.capture(now)
        evaluation = evaluate_rule(rule, snapshot, now)
        blocked = self._gate(rule, now, {r.id: r for r in self.store.list_rules()})
        return {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "matched": evaluation.matched,
            "branch": _plain(evaluation.branch),
            "actions": [a.to_dict() for a in evaluation.actions_for(rule)],
            "cooldown_ok": self.cooldown.allow(rule, now),
            "cooldown_remaining": self.cooldown.remaining(rule, now),
            "limit_reached": self.cooldown.limit_reached(rule),
            "blocked": blocked[1] if blocked else None,
            "trigger_count": rule.trigger_count,
            "last_triggered": rule.last_triggered.isoformat() if rule.last_triggered else None,
            "readings": snapshot.to_dict(),
        }

    def status(self) -> dict[str, Any]:
        """Engine state for dashboards."""
        return {
            "phase": self._phase.value,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_snapshot": self.last_snapshot.to_dict() if self.last_snapshot else {},
            "rule_count": self.store.rule_count,
            "history": self.history.counts(),
            "rules": describe_rules(self.store.list_rules()),
        }


def describe_rules(rules: list[Rule]) -> str:
    """Human-readable summary of enabled rules."""
    active = [r for r in rules if r.enabled]
    if not active:
        return "No active automation rules."

    lines = [f"Active automation rules ({len(active)}):"]
    for r in sorted(active, key=lambda r: (-r.priority, r.id)):
        if r.conditions:
            parts = [r.conditions[0].describe()]
            for c in r.conditions[1:]:
                parts.append(f"{_plain(c.logic_operator)} {c.describe()}")
            trigger = "IF " + " ".join(parts)
        elif r.is_scheduled:
            days = f" on {','.join(r.schedule.days)}" if r.schedule.days else ""
            trigger = f"AT {r.schedule.time}{days}"
        else:
            trigger = "NEVER"
        text = f"  - [{r.id}] \"{r.name}\": {trigger} THEN " + ", ".join(a.describe() for a in r.actions)
        if r.else_actions:
            text += " ELSE " + ", ".join(a.describe() for a in r.else_actions)
        text += f" (priority: {r.priority}, cooldown: {r.cooldown_seconds}s)"
        if r.trigger_count:
            text += f" (fired {r.trigger_count}x)"
        lines.append(text)
    return "\n".join(lines)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
