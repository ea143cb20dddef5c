"""Automation service: wires the rule engine together from configuration.

Usage
-----
>>> config = load_config()
>>> service = AutomationService.from_publisher(config, mqtt_client.publish)
>>> service.start()
>>> service.update_sensors({"temp": 27.4, "humidity": 61.0})
>>> ...
>>> await service.stop()
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Awaitable, Callable

from loguru import logger

from growbox.automation.engine import AutomationEngine
from growbox.automation.executor import ActionExecutor, CallbackChannel, DeviceChannel
from growbox.automation.history import TriggerHistory
from growbox.automation.scheduler import AutomationScheduler
from growbox.automation.sensors import SensorCache
from growbox.automation.store import RuleStore
from growbox.config.schema import Config


class AutomationService:
    """Owns the store, history, sensor cache, engine and scheduler."""

    def __init__(self, config: Config, channel: DeviceChannel) -> None:
        self.config = config
        cfg = config.automation

        self.store = RuleStore(config.rules_path, known_devices=set(cfg.known_devices))
        self.store.load()
        self.history = TriggerHistory(config.history_path, max_entries=cfg.history_max_entries)
        self.history.load()
        self.sensors = SensorCache(max_age=cfg.snapshot_max_age_s)
        self.engine = AutomationEngine(
            self.store,
            self.sensors,
            ActionExecutor(channel, timeout=cfg.dispatch_timeout_s),
            self.history,
        )
        self.scheduler = AutomationScheduler(
            self.engine,
            interval=cfg.tick_interval_s,
            stop_grace=cfg.stop_grace_s,
        )

    @classmethod
    def from_publisher(
        cls,
        config: Config,
        publish_fn: Callable[[str, str], Any | Awaitable[Any]],
    ) -> "AutomationService":
        """Build a service that publishes commands on ``automation.command_topic``."""
        return cls(config, CallbackChannel(publish_fn, topic=config.automation.command_topic))

    def update_sensors(self, readings: Mapping[str, float]) -> None:
        """Feed fresh readings from the acquisition layer."""
        self.sensors.update(readings)

    def start(self) -> None:
        if not self.config.automation.enabled:
            logger.info("[AutomationService] automation disabled in config, not starting")
            return
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    @property
    def running(self) -> bool:
        return self.scheduler.running
