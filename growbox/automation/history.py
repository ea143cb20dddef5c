"""Trigger history: append-only log of rule firing attempts.

Every rule that matched in a tick leaves at least one ``TriggerEvent``,
whether its actions ran, lost to a higher-priority rule, were suppressed by
cooldown, or failed to dispatch.

Ordering
--------
Events are ordered by append sequence (``seq``). Timestamps are normally
non-decreasing; a wall-clock step back is logged, never rejected, so a tick
that already dispatched commands always gets its events recorded.

Storage model
-------------
An in-memory ring buffer (``collections.deque``) keeps the most recent
``max_entries`` events for queries. When a path is configured every event is
also appended to a JSON-lines file, so the on-disk log is never rewritten.
"""

from __future__ import annotations

import json
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger

from growbox.automation.models import Branch


class Outcome(str, Enum):
    FIRED = "fired"                             # Dispatched and acknowledged
    FAILED = "failed"                           # Dispatch attempted, channel reported an error
    UNKNOWN = "unknown"                         # Dispatch interrupted by shutdown
    SUPPRESSED_COOLDOWN = "suppressed-cooldown"
    SUPPRESSED_LIMIT = "suppressed-limit"       # max_executions reached
    OVERRIDDEN = "overridden"                   # Lost the device to a higher-priority rule
    SUPPRESSED_DEPENDENCY = "suppressed-dependency"  # A depends_on rule is missing or disabled
    SUPPRESSED_CONFLICT = "suppressed-conflict"      # A conflicts_with rule fired recently
    SIMULATED = "simulated"                     # dry_run rule matched
    ERRORED = "errored"                         # Evaluation raised


@dataclass
class TriggerEvent:
    """One history record."""
    rule_id: str
    timestamp: datetime
    outcome: str
    branch: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)
    rule_name: str = ""
    detail: str | None = None
    seq: int = 0                        # Append sequence, assigned by TriggerHistory

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "timestamp": self.timestamp.isoformat(),
            "branch": _plain(self.branch),
            "actions": self.actions,
            "outcome": _plain(self.outcome),
            "seq": self.seq,
        }
        if self.detail is not None:
            d["detail"] = self.detail
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TriggerEvent:
        branch = d.get("branch")
        return cls(
            rule_id=d["rule_id"],
            timestamp=datetime.fromisoformat(d["timestamp"]),
            outcome=Outcome(d["outcome"]),
            branch=Branch(branch) if branch else None,
            actions=list(d.get("actions", [])),
            rule_name=d.get("rule_name", ""),
            detail=d.get("detail"),
            seq=d.get("seq", 0),
        )


class TriggerHistory:
    """Append-only event log, ordered by append sequence.

    Parameters
    ----------
    path:
        JSON-lines file for persistence. Empty disables persistence.
    max_entries:
        Number of events kept in memory for queries.
    """

    def __init__(self, path: str | Path = "", max_entries: int = 1000) -> None:
        self.path = Path(path) if path else None
        self.max_entries = max(1, max_entries)
        self._events: deque[TriggerEvent] = deque(maxlen=self.max_entries)
        self._total = 0
        self._seq = 0

    def load(self) -> int:
        """Load the tail of the persisted log. Returns events loaded."""
        if self.path is None or not self.path.exists():
            return 0
        loaded = 0
        try:
            with self.path.open(encoding="utf-8") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = TriggerEvent.from_dict(json.loads(line))
                    except (KeyError, TypeError, ValueError) as exc:
                        logger.warning("[History] skipping malformed event: {}", exc)
                        continue
                    self._events.append(event)
                    loaded += 1
                    self._seq = max(self._seq + 1, event.seq)
        except OSError as exc:
            logger.error("[History] failed to load {}: {}", self.path, exc)
        self._total = loaded
        logger.info("[History] loaded {} events from {}", loaded, self.path)
        return loaded

    def append(self, event: TriggerEvent) -> None:
        """Append one event."""
        self.extend([event])

    def extend(self, events: list[TriggerEvent]) -> None:
        """Append events, assigning each the next sequence number."""
        if not events:
            return
        last = self._events[-1].timestamp if self._events else None
        if last is not None and min(e.timestamp for e in events) < last:
            logger.warning(
                "[History] clock stepped back behind {}, keeping append order", last.isoformat(),
            )
        for event in events:
            self._seq += 1
            event.seq = self._seq
        self._events.extend(events)
        self._total += len(events)
        self._persist(events)

    def _persist(self, events: list[TriggerEvent]) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                for event in events:
                    fh.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.error("[History] failed to append to {}: {}", self.path, exc)

    def recent(self, limit: int = 20, rule_id: str | None = None) -> list[TriggerEvent]:
        """Newest-first events, optionally for one rule."""
        result: list[TriggerEvent] = []
        for event in reversed(self._events):
            if rule_id is not None and event.rule_id != rule_id:
                continue
            result.append(event)
            if len(result) >= limit:
                break
        return result

    def counts(self) -> dict[str, int]:
        """Events per outcome among those held in memory."""
        return dict(Counter(_plain(e.outcome) for e in self._events))

    @property
    def total(self) -> int:
        """Events appended (or loaded) since this process started."""
        return self._total

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
