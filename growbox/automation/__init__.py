"""Automation rules engine.

Evaluates IF/THEN/ELSE rules over sensor snapshots and time-of-day windows,
resolves conflicts between rules that target the same actuator, and
dispatches the resulting device commands.
"""

from growbox.automation.commands import DeviceCommand, DispatchResult, DispatchStatus
from growbox.automation.cooldown import CooldownTracker
from growbox.automation.engine import AutomationEngine, TickPhase, TickReport, describe_rules
from growbox.automation.evaluator import Evaluation, evaluate_rule
from growbox.automation.executor import ActionExecutor, CallbackChannel, DeviceChannel, DispatchError
from growbox.automation.history import Outcome, TriggerEvent, TriggerHistory
from growbox.automation.models import (
    Branch,
    PWMAction,
    RelayAction,
    Rule,
    RuleValidationError,
    Schedule,
    SensorCondition,
    TimeCondition,
    validate_rule,
)
from growbox.automation.resolver import Candidate, Resolution, resolve
from growbox.automation.scheduler import AutomationScheduler
from growbox.automation.sensors import SensorCache, SensorSnapshot, SnapshotUnavailable
from growbox.automation.store import RuleNotFoundError, RuleStore

__all__ = [
    "ActionExecutor",
    "AutomationEngine",
    "AutomationScheduler",
    "Branch",
    "CallbackChannel",
    "Candidate",
    "CooldownTracker",
    "DeviceChannel",
    "DeviceCommand",
    "DispatchError",
    "DispatchResult",
    "DispatchStatus",
    "Evaluation",
    "Outcome",
    "PWMAction",
    "RelayAction",
    "Resolution",
    "Rule",
    "RuleNotFoundError",
    "RuleStore",
    "RuleValidationError",
    "Schedule",
    "SensorCache",
    "SensorCondition",
    "SensorSnapshot",
    "SnapshotUnavailable",
    "TickPhase",
    "TickReport",
    "TimeCondition",
    "TriggerEvent",
    "TriggerHistory",
    "describe_rules",
    "evaluate_rule",
    "resolve",
    "validate_rule",
]
