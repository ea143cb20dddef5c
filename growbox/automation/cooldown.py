"""Per-rule cooldown and execution-limit tracking."""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import datetime
from typing import Callable

from loguru import logger

from growbox.automation.models import Rule


class CooldownTracker:
    """Suppresses re-firing of a rule inside its cooldown window.

    The last firing time is the later of the rule's persisted
    ``last_triggered`` and the tracker's own record, so a slow store
    write-back can never let a rule fire twice inside its window.

    Elapsed time is measured on the wall clock. Each in-memory record also
    keeps a monotonic timestamp: when the wall clock steps back past the last
    firing (DST fall-back, NTP correction) the monotonic time since the
    record is used instead.
    """

    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._last_fired: dict[str, tuple[datetime, float]] = {}  # rule_id → (wall, monotonic)

    def last_fired(self, rule: Rule) -> datetime | None:
        tracked = self._last_fired.get(rule.id)
        if tracked is None:
            return rule.last_triggered
        if rule.last_triggered is None:
            return tracked[0]
        return max(tracked[0], rule.last_triggered)

    def elapsed(self, rule: Rule, now: datetime) -> float | None:
        """Seconds since *rule* last fired, or None if it never has."""
        last = self.last_fired(rule)
        if last is None:
            return None
        elapsed = (now - last).total_seconds()
        if elapsed >= 0:
            return elapsed
        tracked = self._last_fired.get(rule.id)
        if tracked is None:
            # Persisted firing from a previous run is "in the future".
            return float("inf")
        logger.debug(
            "[Cooldown] wall clock is {:.0f}s behind the last firing of '{}', using monotonic time",
            -elapsed, rule.id,
        )
        return max(0.0, self._monotonic() - tracked[1])

    def remaining(self, rule: Rule, now: datetime) -> float:
        """Seconds left before *rule* may fire again (0 if allowed)."""
        if rule.cooldown_seconds <= 0:
            return 0.0
        elapsed = self.elapsed(rule, now)
        if elapsed is None:
            return 0.0
        return max(0.0, rule.cooldown_seconds - elapsed)

    def allow(self, rule: Rule, now: datetime) -> bool:
        return self.remaining(rule, now) <= 0.0

    def fired_within(self, rule: Rule, now: datetime, seconds: float) -> bool:
        """True if *rule* fired less than *seconds* ago."""
        elapsed = self.elapsed(rule, now)
        return elapsed is not None and elapsed < seconds

    def limit_reached(self, rule: Rule) -> bool:
        return rule.max_executions > 0 and rule.trigger_count >= rule.max_executions

    def record(self, rule_id: str, when: datetime) -> None:
        self._last_fired[rule_id] = (when, self._monotonic())

    def forget(self, rule_id: str) -> None:
        self._last_fired.pop(rule_id, None)

    def prune(self, rule_ids: Iterable[str]) -> None:
        """Forget every rule not in *rule_ids* (deleted rules)."""
        keep = set(rule_ids)
        for rule_id in [r for r in self._last_fired if r not in keep]:
            self.forget(rule_id)
