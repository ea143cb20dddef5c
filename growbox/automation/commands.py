"""Device command schema and controller payload mapping.

A ``DeviceCommand`` is the resolved, single instruction for one actuator in
one tick. The controller firmware expects a slightly different shape, built
by ``DeviceCommand.to_payload()``:

Relay
-----
{"action": "set_relay", "relay": "fan_exhaust", "state": true}

PWM (0-100 % scaled to the 8-bit duty cycle)
---------------------------------------------
{"action": "set_fan_pwm", "value": 204}
{"action": "set_light_pwm", "value": 128}

Anything else falls through as ``{"action": "PWM", "device": ..., "value": ...}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from growbox.automation.models import Action, Command, PWMAction


FAN_DEVICES = frozenset({"fan", "fan_exhaust"})
LIGHT_DEVICES = frozenset({"light", "grow_light"})


def percent_to_duty(value: float) -> int:
    """Scale a 0-100 % value to the controller's 0-255 duty cycle."""
    return round((value / 100) * 255)


@dataclass(frozen=True)
class DeviceCommand:
    """A command for one device.

    Frozen so identical commands compare and hash equal; applying the same
    command twice must leave the actuator in the same state.
    """
    device: str
    command: str                    # Command value
    value: float | None = None      # Only for PWM

    @classmethod
    def from_action(cls, action: Action) -> DeviceCommand:
        if isinstance(action, PWMAction):
            return cls(device=action.device, command=Command.PWM.value, value=action.value)
        command = action.command.value if isinstance(action.command, Enum) else action.command
        return cls(device=action.device, command=command)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"device": self.device, "command": self.command}
        if self.value is not None:
            d["value"] = self.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeviceCommand:
        return cls(device=d["device"], command=d["command"], value=d.get("value"))

    def to_payload(self) -> dict[str, Any]:
        """Build the controller wire payload for this command."""
        if self.command in (Command.ON.value, Command.OFF.value):
            return {
                "action": "set_relay",
                "relay": self.device,
                "state": self.command == Command.ON.value,
            }
        if self.command == Command.PWM.value and self.value is not None:
            duty = percent_to_duty(self.value)
            if self.device in FAN_DEVICES:
                return {"action": "set_fan_pwm", "value": duty}
            if self.device in LIGHT_DEVICES:
                return {"action": "set_light_pwm", "value": duty}
        return {"action": self.command, "device": self.device, "value": self.value}

    def describe(self) -> str:
        if self.value is not None:
            return f"{self.device} {self.command} {self.value}"
        return f"{self.device} {self.command}"


class DispatchStatus(str, Enum):
    """Outcome of sending one command over the device channel."""
    OK = "ok"
    ERROR = "error"
    UNKNOWN = "unknown"     # In flight when the dispatch was cancelled


@dataclass
class DispatchResult:
    """Per-command result reported by the action executor."""
    command: DeviceCommand
    status: str
    error: str | None = None

    @property
    def attempted(self) -> bool:
        """True when the channel confirmed the attempt, successful or not."""
        return self.status in (DispatchStatus.OK, DispatchStatus.ERROR)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "command": self.command.to_dict(),
            "status": self.status.value if isinstance(self.status, Enum) else self.status,
        }
        if self.error is not None:
            d["error"] = self.error
        return d
