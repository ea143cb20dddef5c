"""Automation rule data model and validation.

A rule is an IF (conditions) → THEN (actions) [ELSE (actions)] unit over
sensor readings and time-of-day windows, or a schedule-driven unit that fires
at a fixed minute of the day.

Conditions and actions are tagged variants:

- ``SensorCondition`` / ``TimeCondition``, discriminated by ``type``
- ``RelayAction`` / ``PWMAction``, discriminated by ``command``

Serialization follows the on-disk rule document format (snake_case keys).

Examples
--------
"If temperature > 28, turn on exhaust fan":

>>> Rule(
...     id="temp-fan",
...     name="Cool when hot",
...     conditions=[SensorCondition(sensor="temp", operator=">", value=28)],
...     actions=[RelayAction(device="fan_exhaust", command="ON")],
... )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union


class RuleValidationError(ValueError):
    """Raised when a rule definition violates the model invariants."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid rule")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ComparisonOp(str, Enum):
    """Operators for sensor conditions."""
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="
    BETWEEN = "between"   # inclusive: value <= reading <= value2


class TimeMode(str, Enum):
    """How a time condition compares the wall clock against its window."""
    AT = "at"             # exact minute
    BETWEEN = "between"   # [start, end), may cross midnight
    BEFORE = "before"     # strictly before start
    AFTER = "after"       # strictly after start


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Command(str, Enum):
    """Actuator commands."""
    ON = "ON"
    OFF = "OFF"
    PWM = "PWM"


class Branch(str, Enum):
    THEN = "then"
    ELSE = "else"


WEEKDAYS: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def is_valid_hhmm(value: Any) -> bool:
    """Return True for a well-formed 24h ``HH:MM`` string."""
    return isinstance(value, str) and _HHMM_RE.match(value) is not None


def hhmm_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` to minutes since midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

@dataclass
class SensorCondition:
    """Compare one sensor reading from the snapshot against a threshold.

    ``between`` uses both ``value`` and ``value2`` as inclusive bounds.
    """
    kind: ClassVar[str] = "sensor"

    sensor: str                         # Key into the sensor snapshot
    operator: str                       # ComparisonOp value
    value: float
    value2: float | None = None         # Upper bound, only for "between"
    unit: str = ""                      # Display only
    logic_operator: str = LogicOperator.AND

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.kind,
            "sensor": self.sensor,
            "operator": _enum_value(self.operator),
            "value": self.value,
            "logic_operator": _enum_value(self.logic_operator),
        }
        if self.value2 is not None:
            d["value2"] = self.value2
        if self.unit:
            d["unit"] = self.unit
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SensorCondition:
        return cls(
            sensor=d["sensor"],
            operator=d.get("operator", ComparisonOp.GT.value),
            value=d["value"],
            value2=d.get("value2"),
            unit=d.get("unit", ""),
            logic_operator=d.get("logic_operator", LogicOperator.AND.value),
        )

    def describe(self) -> str:
        if self.operator == ComparisonOp.BETWEEN:
            return f"{self.sensor} between {self.value}..{self.value2}{self.unit}"
        return f"{self.sensor} {_enum_value(self.operator)} {self.value}{self.unit}"


@dataclass
class TimeCondition:
    """Match the local wall-clock time against a window.

    ``end_time`` is only used (and required) by ``between``. ``days`` limits
    the condition to certain weekdays; empty means every day.
    """
    kind: ClassVar[str] = "time"

    time_mode: str                      # TimeMode value
    start_time: str                     # HH:MM
    end_time: str | None = None         # HH:MM, only for "between"
    days: list[str] = field(default_factory=list)
    logic_operator: str = LogicOperator.AND

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.kind,
            "time_mode": _enum_value(self.time_mode),
            "start_time": self.start_time,
            "logic_operator": _enum_value(self.logic_operator),
        }
        if self.end_time is not None:
            d["end_time"] = self.end_time
        if self.days:
            d["days"] = list(self.days)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TimeCondition:
        return cls(
            time_mode=d.get("time_mode", TimeMode.BETWEEN.value),
            start_time=d["start_time"],
            end_time=d.get("end_time"),
            days=list(d.get("days", [])),
            logic_operator=d.get("logic_operator", LogicOperator.AND.value),
        )

    def describe(self) -> str:
        mode = _enum_value(self.time_mode)
        if mode == TimeMode.BETWEEN.value:
            text = f"time between {self.start_time}-{self.end_time}"
        else:
            text = f"time {mode} {self.start_time}"
        if self.days:
            text += f" on {','.join(self.days)}"
        return text


Condition = Union[SensorCondition, TimeCondition]

_CONDITION_TYPES: dict[str, type] = {
    SensorCondition.kind: SensorCondition,
    TimeCondition.kind: TimeCondition,
}


def condition_from_dict(d: dict[str, Any]) -> Condition:
    """Build the right condition variant from its ``type`` tag."""
    cls = _CONDITION_TYPES.get(d.get("type", ""))
    if cls is None:
        raise RuleValidationError(
            [f"Unknown condition type {d.get('type')!r}. Valid: {sorted(_CONDITION_TYPES)}"]
        )
    return cls.from_dict(d)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass
class RelayAction:
    """Switch a relay-driven actuator on or off."""
    device: str
    command: str = Command.ON

    def to_dict(self) -> dict[str, Any]:
        return {"device": self.device, "command": _enum_value(self.command)}

    def describe(self) -> str:
        return f"{self.device} {_enum_value(self.command)}"


@dataclass
class PWMAction:
    """Drive a PWM actuator at ``value`` percent (0-100)."""
    device: str
    value: float
    command: str = Command.PWM

    def to_dict(self) -> dict[str, Any]:
        return {"device": self.device, "command": Command.PWM.value, "value": self.value}

    def describe(self) -> str:
        return f"{self.device} PWM {self.value}%"


Action = Union[RelayAction, PWMAction]


def action_from_dict(d: dict[str, Any]) -> Action:
    """Build the right action variant from its ``command`` tag."""
    command = d.get("command")
    if command in (Command.ON.value, Command.OFF.value):
        return RelayAction(device=d["device"], command=command)
    if command == Command.PWM.value:
        if "value" not in d:
            raise RuleValidationError([f"PWM action for '{d.get('device')}' requires a value"])
        return PWMAction(device=d["device"], value=d["value"])
    raise RuleValidationError(
        [f"Unknown action command {command!r}. Valid: {[c.value for c in Command]}"]
    )


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

@dataclass
class Schedule:
    """Fixed daily trigger, e.g. lights on at 06:00."""
    time: str                           # HH:MM
    type: str = "daily"
    days: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "time": self.time}
        if self.days:
            d["days"] = list(self.days)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Schedule:
        return cls(
            time=d["time"],
            type=d.get("type", "daily"),
            days=list(d.get("days", [])),
        )


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------

@dataclass
class Rule:
    """A complete automation rule.

    **Evaluation semantics**: conditions fold left to right using each
    condition's ``logic_operator`` (the first one's is ignored). A rule is
    either condition-driven or schedule-driven, never both.

    ``last_triggered`` and ``trigger_count`` are owned by the engine; the
    store preserves them across full-document updates.

    ``depends_on`` lists rules that must exist and be enabled for this one
    to fire. ``conflicts_with`` lists rules whose recent firing suppresses
    this one.
    """
    id: str
    name: str
    description: str = ""
    enabled: bool = True
    priority: int = 50
    cooldown_seconds: int = 0
    max_executions: int = 0             # 0 = unlimited
    dry_run: bool = False               # Evaluate and record, never dispatch
    conditions: list[Condition] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    else_actions: list[Action] = field(default_factory=list)
    schedule: Schedule | None = None
    depends_on: list[str] = field(default_factory=list)      # Rule ids that must be enabled
    conflicts_with: list[str] = field(default_factory=list)  # Rule ids that block this one after firing
    last_triggered: datetime | None = None
    trigger_count: int = 0

    @property
    def is_scheduled(self) -> bool:
        return self.schedule is not None and not self.conditions

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "cooldown_seconds": self.cooldown_seconds,
            "max_executions": self.max_executions,
            "dry_run": self.dry_run,
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "else_actions": [a.to_dict() for a in self.else_actions],
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "depends_on": list(self.depends_on),
            "conflicts_with": list(self.conflicts_with),
            "last_triggered": self.last_triggered.isoformat() if self.last_triggered else None,
            "trigger_count": self.trigger_count,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Rule:
        last = d.get("last_triggered")
        schedule = d.get("schedule")
        return cls(
            id=d.get("id", ""),
            name=d.get("name", ""),
            description=d.get("description", ""),
            enabled=d.get("enabled", True),
            priority=d.get("priority", 50),
            cooldown_seconds=d.get("cooldown_seconds", 0),
            max_executions=d.get("max_executions", 0),
            dry_run=d.get("dry_run", False),
            conditions=[condition_from_dict(c) for c in d.get("conditions", [])],
            actions=[action_from_dict(a) for a in d.get("actions", [])],
            else_actions=[action_from_dict(a) for a in d.get("else_actions") or []],
            schedule=Schedule.from_dict(schedule) if schedule else None,
            depends_on=d.get("depends_on") or [],
            conflicts_with=d.get("conflicts_with") or [],
            last_triggered=datetime.fromisoformat(last) if last else None,
            trigger_count=d.get("trigger_count", 0),
        )

    def target_devices(self) -> set[str]:
        """Return every device this rule may command."""
        return {a.device for a in (*self.actions, *self.else_actions)}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_rule(
    rule: Rule,
    known_devices: set[str] | None = None,
) -> list[str]:
    """Validate a rule against the model invariants.

    When *known_devices* is non-empty, action targets must be in it.

    Returns a list of error strings. Empty list means valid.
    """
    errors: list[str] = []

    if not rule.name:
        errors.append("Rule must have a name")

    if not rule.actions:
        errors.append("Rule must have at least one action")

    if rule.conditions and rule.schedule is not None:
        errors.append("Rule must use either conditions or a schedule, not both")
    elif not rule.conditions and rule.schedule is None:
        errors.append("Rule must have at least one condition or a schedule")

    if rule.schedule is not None and rule.else_actions:
        errors.append("Schedule-driven rules cannot have else actions")

    if not isinstance(rule.priority, int) or not 0 <= rule.priority <= 100:
        errors.append(f"Priority must be an integer in 0..100, got {rule.priority!r}")

    if not isinstance(rule.cooldown_seconds, int) or rule.cooldown_seconds < 0:
        errors.append(f"Cooldown must be a non-negative integer, got {rule.cooldown_seconds!r}")

    if not isinstance(rule.max_executions, int) or rule.max_executions < 0:
        errors.append(f"max_executions must be a non-negative integer, got {rule.max_executions!r}")

    for label, refs in (("depends_on", rule.depends_on), ("conflicts_with", rule.conflicts_with)):
        errors.extend(_validate_rule_refs(label, refs, rule.id))

    for i, cond in enumerate(rule.conditions):
        errors.extend(_validate_condition(f"Condition[{i}]", cond))

    for label, actions in (("Action", rule.actions), ("ElseAction", rule.else_actions)):
        for i, act in enumerate(actions):
            errors.extend(_validate_action(f"{label}[{i}]", act, known_devices))

    if rule.schedule is not None:
        sched = rule.schedule
        if sched.type != "daily":
            errors.append(f"Schedule: unsupported type '{sched.type}'. Valid: ['daily']")
        if not is_valid_hhmm(sched.time):
            errors.append(f"Schedule: invalid time {sched.time!r}, expected HH:MM")
        errors.extend(_validate_days("Schedule", sched.days))

    return errors


def _validate_condition(prefix: str, cond: Condition) -> list[str]:
    errors: list[str] = []
    logic_ops = {op.value for op in LogicOperator}
    if not _is_member(cond.logic_operator, logic_ops):
        errors.append(f"{prefix}: Unknown logic operator '{cond.logic_operator}'")

    if isinstance(cond, SensorCondition):
        valid_ops = {op.value for op in ComparisonOp}
        op = _enum_value(cond.operator)
        if not cond.sensor or not isinstance(cond.sensor, str):
            errors.append(f"{prefix}: Sensor condition needs a sensor key")
        if not _is_member(op, valid_ops):
            errors.append(f"{prefix}: Unknown operator '{cond.operator}'. Valid: {sorted(valid_ops)}")
        if not _is_number(cond.value):
            errors.append(f"{prefix}: Threshold must be numeric, got {cond.value!r}")
        if op == ComparisonOp.BETWEEN.value:
            if not _is_number(cond.value2):
                errors.append(f"{prefix}: 'between' requires a numeric value2")
            elif _is_number(cond.value) and cond.value2 < cond.value:
                errors.append(f"{prefix}: 'between' requires value <= value2")
    elif isinstance(cond, TimeCondition):
        valid_modes = {m.value for m in TimeMode}
        mode = _enum_value(cond.time_mode)
        if not _is_member(mode, valid_modes):
            errors.append(f"{prefix}: Unknown time mode '{cond.time_mode}'. Valid: {sorted(valid_modes)}")
        if not is_valid_hhmm(cond.start_time):
            errors.append(f"{prefix}: invalid start_time {cond.start_time!r}, expected HH:MM")
        if mode == TimeMode.BETWEEN.value and not is_valid_hhmm(cond.end_time):
            errors.append(f"{prefix}: 'between' requires a valid end_time (HH:MM)")
        errors.extend(_validate_days(prefix, cond.days))
    else:
        errors.append(f"{prefix}: Unsupported condition {type(cond).__name__}")
    return errors


def _validate_action(prefix: str, act: Action, known_devices: set[str] | None) -> list[str]:
    errors: list[str] = []
    if not act.device or not isinstance(act.device, str):
        errors.append(f"{prefix}: Action needs a target device")
    elif known_devices and act.device not in known_devices:
        errors.append(f"{prefix}: Device '{act.device}' is not a known actuator")

    if isinstance(act, PWMAction):
        if not _is_number(act.value) or not 0 <= act.value <= 100:
            errors.append(f"{prefix}: PWM value must be in 0..100, got {act.value!r}")
    elif isinstance(act, RelayAction):
        if _enum_value(act.command) not in (Command.ON.value, Command.OFF.value):
            errors.append(f"{prefix}: Relay command must be ON or OFF, got '{act.command}'")
    else:
        errors.append(f"{prefix}: Unsupported action {type(act).__name__}")
    return errors


def _validate_rule_refs(label: str, refs: list[str], rule_id: str) -> list[str]:
    if not isinstance(refs, list):
        return [f"{label} must be a list of rule ids, got {refs!r}"]
    errors: list[str] = []
    for ref in refs:
        if not ref or not isinstance(ref, str):
            errors.append(f"{label}: invalid rule id {ref!r}")
        elif rule_id and ref == rule_id:
            errors.append(f"{label}: rule cannot reference itself")
    return errors


def _validate_days(prefix: str, days: list[str]) -> list[str]:
    if not isinstance(days, list):
        return [f"{prefix}: days must be a list of weekday names, got {days!r}"]
    bad = [d for d in days if d not in WEEKDAYS]
    if bad:
        return [f"{prefix}: Unknown weekday(s) {bad}. Valid: {list(WEEKDAYS)}"]
    return []


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_member(value: Any, valid: set[str]) -> bool:
    return isinstance(value, str) and value in valid


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
