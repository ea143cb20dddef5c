"""Conflict resolution between rules that target the same device.

Every rule that matched and passed its cooldown in a tick bids one command
per device it targets. For each device the bid from the highest-priority
rule wins; ties go to the lowest rule id so identical inputs always give
identical output. Losing bids are returned too, so the engine can record
them as overridden instead of dropping them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from growbox.automation.commands import DeviceCommand
from growbox.automation.models import Action, Branch, Rule


@dataclass
class Candidate:
    """A rule whose branch is ready to act this tick."""
    rule: Rule
    branch: Branch
    actions: list[Action]


@dataclass(frozen=True)
class Bid:
    """One command proposed by one rule."""
    rule_id: str
    priority: int
    branch: Branch
    action: Action
    command: DeviceCommand


@dataclass
class Resolution:
    winners: list[Bid] = field(default_factory=list)      # one per device
    overridden: list[Bid] = field(default_factory=list)

    @property
    def commands(self) -> list[DeviceCommand]:
        return [b.command for b in self.winners]

    def winners_for(self, rule_id: str) -> list[Bid]:
        return [b for b in self.winners if b.rule_id == rule_id]

    def overridden_for(self, rule_id: str) -> list[Bid]:
        return [b for b in self.overridden if b.rule_id == rule_id]


def _sort_key(bid: Bid) -> tuple[int, str]:
    return (-bid.priority, bid.rule_id)


def resolve(candidates: list[Candidate]) -> Resolution:
    """Reduce all candidate actions to one winning command per device."""
    resolution = Resolution()
    by_device: dict[str, list[Bid]] = {}

    for cand in candidates:
        # Within one rule a later action on the same device supersedes an earlier one.
        own: dict[str, Bid] = {}
        for action in cand.actions:
            bid = Bid(
                rule_id=cand.rule.id,
                priority=cand.rule.priority,
                branch=cand.branch,
                action=action,
                command=DeviceCommand.from_action(action),
            )
            previous = own.get(action.device)
            if previous is not None:
                resolution.overridden.append(previous)
            own[action.device] = bid
        for device, bid in own.items():
            by_device.setdefault(device, []).append(bid)

    for device in sorted(by_device):
        bids = sorted(by_device[device], key=_sort_key)
        resolution.winners.append(bids[0])
        resolution.overridden.extend(bids[1:])

    return resolution
