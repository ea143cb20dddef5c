"""Condition evaluation.

Pure functions: given a rule, an immutable sensor snapshot and the current
local time, decide whether the rule matched and which branch fires. No I/O.

Time is compared at minute resolution on the local wall clock.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from growbox.automation.models import (
    WEEKDAYS,
    Action,
    Branch,
    ComparisonOp,
    Condition,
    LogicOperator,
    Rule,
    Schedule,
    SensorCondition,
    TimeCondition,
    TimeMode,
    hhmm_to_minutes,
)


_OP_FUNCS: dict[str, Callable[[float, float], bool]] = {
    ComparisonOp.GT.value: lambda a, b: a > b,
    ComparisonOp.LT.value: lambda a, b: a < b,
    ComparisonOp.GE.value: lambda a, b: a >= b,
    ComparisonOp.LE.value: lambda a, b: a <= b,
    ComparisonOp.EQ.value: lambda a, b: a == b,
    ComparisonOp.NE.value: lambda a, b: a != b,
}


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one rule."""
    matched: bool
    branch: Branch | None = None

    def actions_for(self, rule: Rule) -> list[Action]:
        if self.branch is Branch.THEN:
            return list(rule.actions)
        if self.branch is Branch.ELSE:
            return list(rule.else_actions)
        return []


def minute_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


def weekday_name(now: datetime) -> str:
    return WEEKDAYS[now.weekday()]


def evaluate_sensor_condition(cond: SensorCondition, snapshot: Mapping[str, float]) -> bool:
    """Compare a snapshot reading against the condition's threshold.

    A missing reading is a data gap, not an error: the condition is false.
    """
    reading = snapshot.get(cond.sensor)
    if reading is None:
        logger.debug("[Evaluator] data gap: no reading for sensor '{}'", cond.sensor)
        return False

    op = _value(cond.operator)
    if op == ComparisonOp.BETWEEN.value:
        if cond.value2 is None:
            return False
        return cond.value <= reading <= cond.value2

    op_func = _OP_FUNCS.get(op)
    if op_func is None:
        logger.warning("[Evaluator] unknown operator '{}'", op)
        return False
    return op_func(reading, cond.value)


def evaluate_time_condition(cond: TimeCondition, now: datetime) -> bool:
    """Match ``now`` against the condition's window.

    ``between`` is half-open ``[start, end)``; when start > end the window
    wraps past midnight.
    """
    if cond.days and weekday_name(now) not in cond.days:
        return False

    current = minute_of_day(now)
    start = hhmm_to_minutes(cond.start_time)
    mode = _value(cond.time_mode)

    if mode == TimeMode.AT.value:
        return current == start
    if mode == TimeMode.BEFORE.value:
        return current < start
    if mode == TimeMode.AFTER.value:
        return current > start
    if mode == TimeMode.BETWEEN.value:
        if cond.end_time is None:
            return False
        end = hhmm_to_minutes(cond.end_time)
        if start <= end:
            return start <= current < end
        return current >= start or current < end
    logger.warning("[Evaluator] unknown time mode '{}'", mode)
    return False


def evaluate_condition(
    cond: Condition,
    snapshot: Mapping[str, float],
    now: datetime,
) -> bool:
    """Evaluate one condition of either variant."""
    if isinstance(cond, SensorCondition):
        return evaluate_sensor_condition(cond, snapshot)
    if isinstance(cond, TimeCondition):
        return evaluate_time_condition(cond, now)
    raise TypeError(f"unsupported condition type {type(cond).__name__}")


def fold_conditions(
    conditions: list[Condition],
    snapshot: Mapping[str, float],
    now: datetime,
) -> bool:
    """Combine conditions strictly left to right.

    ``[A, B(AND), C(OR)]`` evaluates as ``(A AND B) OR C``. Every condition
    is evaluated (no short circuit) so data gaps are always logged.
    """
    if not conditions:
        return False
    result = evaluate_condition(conditions[0], snapshot, now)
    for cond in conditions[1:]:
        value = evaluate_condition(cond, snapshot, now)
        if _value(cond.logic_operator) == LogicOperator.OR.value:
            result = result or value
        else:
            result = result and value
    return result


def schedule_due(schedule: Schedule, now: datetime, last_triggered: datetime | None = None) -> bool:
    """Return True when the schedule's minute is ``now``.

    A schedule fires once per minute: if ``last_triggered`` falls in the
    same minute, it is not due again.
    """
    if schedule.days and weekday_name(now) not in schedule.days:
        return False
    if minute_of_day(now) != hhmm_to_minutes(schedule.time):
        return False
    if last_triggered is not None and _same_minute(last_triggered, now):
        return False
    return True


def evaluate_rule(rule: Rule, snapshot: Mapping[str, float], now: datetime) -> Evaluation:
    """Decide whether *rule* matches and which branch fires."""
    if rule.is_scheduled:
        # Schedule-driven rules have no else branch.
        if schedule_due(rule.schedule, now, rule.last_triggered):
            return Evaluation(matched=True, branch=Branch.THEN)
        return Evaluation(matched=False)
    if not rule.conditions:
        return Evaluation(matched=False)

    matched = fold_conditions(rule.conditions, snapshot, now)

    if matched:
        return Evaluation(matched=True, branch=Branch.THEN)
    if rule.else_actions:
        return Evaluation(matched=False, branch=Branch.ELSE)
    return Evaluation(matched=False)


def _same_minute(a: datetime, b: datetime) -> bool:
    return a.replace(second=0, microsecond=0) == b.replace(second=0, microsecond=0)


def _value(v: Any) -> Any:
    return getattr(v, "value", v)
