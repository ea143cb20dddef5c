"""Sensor snapshot source.

Incoming readings are merged into a ``SensorCache`` as they arrive. At the
start of every tick the engine calls ``capture()`` once, producing an
immutable ``SensorSnapshot`` that every condition of every rule in that tick
reads from.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from datetime import datetime
from types import MappingProxyType

from loguru import logger


class SnapshotUnavailable(RuntimeError):
    """No usable sensor data for this tick."""


class SensorSnapshot(Mapping[str, float]):
    """Read-only mapping of sensor key to numeric reading."""

    __slots__ = ("_readings", "captured_at")

    def __init__(self, readings: Mapping[str, float], captured_at: datetime | None = None):
        self._readings = MappingProxyType(dict(readings))
        self.captured_at = captured_at or datetime.now()

    def __getitem__(self, key: str) -> float:
        return self._readings[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._readings)

    def __len__(self) -> int:
        return len(self._readings)

    def __repr__(self) -> str:
        return f"SensorSnapshot({dict(self._readings)!r}, captured_at={self.captured_at!r})"

    def to_dict(self) -> dict[str, float]:
        return dict(self._readings)


class SensorCache:
    """Latest-value cache fed by the acquisition layer.

    Parameters
    ----------
    max_age:
        Seconds after which the cache is considered stale and ``capture()``
        refuses to build a snapshot. 0 disables the staleness check.
    """

    def __init__(self, max_age: float = 0.0) -> None:
        self.max_age = max_age
        self._readings: dict[str, float] = {}
        self._updated_at: datetime | None = None

    def update(self, readings: Mapping[str, float], at: datetime | None = None) -> None:
        """Merge new readings. Non-numeric values are ignored."""
        accepted = 0
        for key, value in readings.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                logger.debug("[Sensors] ignoring non-numeric reading {}={!r}", key, value)
                continue
            self._readings[key] = float(value)
            accepted += 1
        if accepted:
            self._updated_at = at or datetime.now()

    def clear(self) -> None:
        self._readings.clear()
        self._updated_at = None

    @property
    def updated_at(self) -> datetime | None:
        return self._updated_at

    def capture(self, now: datetime | None = None) -> SensorSnapshot:
        """Return an immutable snapshot of the current readings.

        Raises ``SnapshotUnavailable`` when there is no data yet or the
        data is older than ``max_age``.
        """
        now = now or datetime.now()
        if not self._readings or self._updated_at is None:
            raise SnapshotUnavailable("no sensor readings received yet")
        if self.max_age > 0:
            age = (now - self._updated_at).total_seconds()
            if age > self.max_age:
                raise SnapshotUnavailable(
                    f"sensor readings are stale ({age:.0f}s old, max {self.max_age:.0f}s)"
                )
        return SensorSnapshot(self._readings, captured_at=now)
