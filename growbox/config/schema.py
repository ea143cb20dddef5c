"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AutomationConfig(Base):
    """Rule engine configuration."""

    enabled: bool = True
    tick_interval_s: float = Field(default=5.0, gt=0)   # Seconds between evaluation ticks
    rules_path: str = ""                 # Path to automation_rules.json (default: <workspace>/automation_rules.json)
    history_path: str = ""               # Path to trigger_history.jsonl (default: <workspace>/trigger_history.jsonl)
    history_max_entries: int = 1000      # Events kept in memory for queries
    snapshot_max_age_s: float = 30.0     # Skip ticks when sensor data is older than this. 0 = never stale
    dispatch_timeout_s: float = 10.0     # Per-command acknowledgement timeout. 0 = wait forever
    stop_grace_s: float = 5.0            # How long stop() waits for an in-flight tick
    command_topic: str = "growbox/command"  # Topic passed to the publish callback
    known_devices: list[str] = Field(default_factory=lambda: [
        "light", "grow_light", "fan_exhaust", "fan_circulation", "pump_main",
        "pump_mix", "nutrient_pump", "heater", "dehumidifier",
    ])  # Actuators rules may target. Empty = any


class Config(BaseSettings):
    """Root configuration for growbox."""

    workspace: str = "~/.growbox"
    automation: AutomationConfig = Field(default_factory=AutomationConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.workspace).expanduser()

    @property
    def rules_path(self) -> Path:
        if self.automation.rules_path:
            return Path(self.automation.rules_path).expanduser()
        return self.workspace_path / "automation_rules.json"

    @property
    def history_path(self) -> Path:
        if self.automation.history_path:
            return Path(self.automation.history_path).expanduser()
        return self.workspace_path / "trigger_history.jsonl"

    model_config = ConfigDict(env_prefix="GROWBOX_", env_nested_delimiter="__")
