"""Tests for growbox.automation.engine — end-to-end evaluation ticks."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest

import growbox.automation.engine as engine_mod
from growbox.automation.commands import DeviceCommand
from growbox.automation.engine import AutomationEngine, TickPhase, describe_rules
from growbox.automation.executor import ActionExecutor, DispatchError
from growbox.automation.history import Outcome, TriggerHistory
from growbox.automation.models import (
    Branch,
    PWMAction,
    RelayAction,
    Rule,
    Schedule,
    SensorCondition,
    TimeCondition,
)
from growbox.automation.sensors import SensorCache, SnapshotUnavailable
from growbox.automation.store import RuleNotFoundError, RuleStore

T0 = datetime(2024, 5, 6, 12, 0, 0)  # Monday noon


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingChannel:
    """Fake device channel: applies commands to a state map."""

    def __init__(self, fail_devices: set[str] | None = None):
        self.fail_devices = fail_devices or set()
        self.published: list[DeviceCommand] = []
        self.state: dict[str, tuple[str, float | None]] = {}

    async def publish(self, command: DeviceCommand) -> None:
        if command.device in self.fail_devices:
            raise DispatchError(f"{command.device} offline")
        self.published.append(command)
        self.state[command.device] = (command.command, command.value)


class GatedChannel(RecordingChannel):
    """Channel that blocks every publish until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def publish(self, command: DeviceCommand) -> None:
        self.entered.set()
        await self.gate.wait()
        await super().publish(command)


def _temp_fan_rule(**kwargs) -> Rule:
    """Helper: if temp > 28, exhaust fan on."""
    defaults = dict(
        id="temp-fan",
        name="Cool when hot",
        priority=50,
        conditions=[SensorCondition(sensor="temp", operator=">", value=28)],
        actions=[RelayAction("fan_exhaust", "ON")],
    )
    defaults.update(kwargs)
    return Rule(**defaults)


async def _make_engine(
    tmp_path: Path,
    *rules: Rule,
    readings: dict[str, float] | None = None,
    channel: RecordingChannel | None = None,
) -> tuple[AutomationEngine, RecordingChannel]:
    store = RuleStore(tmp_path / "rules.json")
    for rule in rules:
        await store.create(rule)
    sensors = SensorCache()
    sensors.update({"temp": 29.0} if readings is None else readings, at=T0)
    channel = channel or RecordingChannel()
    engine = AutomationEngine(
        store, sensors, ActionExecutor(channel, timeout=5.0), TriggerHistory(),
        clock=lambda: T0,
    )
    return engine, channel


# ===========================================================================
# Basic firing
# ===========================================================================

class TestFiring:
    @pytest.mark.asyncio
    async def test_hot_temp_fires_fan(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule())
        report = await engine.tick(T0)

        assert report.commands == [DeviceCommand("fan_exhaust", "ON")]
        assert report.fired_rules == ["temp-fan"]
        assert channel.state == {"fan_exhaust": ("ON", None)}

        rule = engine.store.get("temp-fan")
        assert rule.trigger_count == 1
        assert rule.last_triggered == T0

        events = list(engine.history)
        assert len(events) == 1
        assert events[0].outcome is Outcome.FIRED
        assert events[0].branch is Branch.THEN
        assert events[0].actions == [{"device": "fan_exhaust", "command": "ON"}]

    @pytest.mark.asyncio
    async def test_no_match_no_command(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule(), readings={"temp": 20.0})
        report = await engine.tick(T0)
        assert report.commands == []
        assert channel.published == []
        assert len(engine.history) == 0

    @pytest.mark.asyncio
    async def test_else_branch_fires(self, tmp_path):
        rule = _temp_fan_rule(else_actions=[RelayAction("fan_exhaust", "OFF")])
        engine, channel = await _make_engine(tmp_path, rule, readings={"temp": 20.0})
        report = await engine.tick(T0)
        assert report.commands == [DeviceCommand("fan_exhaust", "OFF")]
        assert list(engine.history)[0].branch is Branch.ELSE
        assert engine.store.get("temp-fan").trigger_count == 1

    @pytest.mark.asyncio
    async def test_missing_sensor_does_not_abort_tick(self, tmp_path):
        humidity = _temp_fan_rule(
            id="humid",
            conditions=[SensorCondition(sensor="humidity", operator=">", value=70)],
            actions=[RelayAction("dehumidifier", "ON")],
        )
        engine, channel = await _make_engine(tmp_path, humidity, _temp_fan_rule())
        report = await engine.tick(T0)
        assert report.evaluated == 2
        assert report.commands == [DeviceCommand("fan_exhaust", "ON")]

    @pytest.mark.asyncio
    async def test_disabled_rule_not_evaluated(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule(enabled=False))
        report = await engine.tick(T0)
        assert report.evaluated == 0
        assert channel.published == []

    @pytest.mark.asyncio
    async def test_pwm_command(self, tmp_path):
        rule = _temp_fan_rule(actions=[PWMAction("fan_exhaust", 75)])
        engine, channel = await _make_engine(tmp_path, rule)
        await engine.tick(T0)
        assert channel.state == {"fan_exhaust": ("PWM", 75)}

    @pytest.mark.asyncio
    async def test_phase_returns_to_idle(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule())
        await engine.tick(T0)
        assert engine.phase is TickPhase.IDLE
        assert engine.ticks_run == 1
        assert engine.last_tick_at == T0

    @pytest.mark.asyncio
    async def test_uses_clock_when_no_time_given(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule())
        report = await engine.tick()
        assert report.timestamp == T0


# ===========================================================================
# Cooldown and limits
# ===========================================================================

class TestCooldown:
    @pytest.mark.asyncio
    async def test_no_refire_inside_cooldown(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule(cooldown_seconds=60))

        first = await engine.tick(T0)
        assert first.fired_rules == ["temp-fan"]

        for offset in (5, 30, 59):
            report = await engine.tick(T0 + timedelta(seconds=offset))
            assert report.commands == []
            assert report.outcomes("temp-fan") == ["suppressed-cooldown"]

        again = await engine.tick(T0 + timedelta(seconds=60))
        assert again.fired_rules == ["temp-fan"]

        fired = [e.timestamp for e in engine.history if e.outcome is Outcome.FIRED]
        assert fired == [T0, T0 + timedelta(seconds=60)]
        assert engine.store.get("temp-fan").trigger_count == 2

    @pytest.mark.asyncio
    async def test_cooled_down_rule_frees_device_for_lower_priority(self, tmp_path):
        high = _temp_fan_rule(id="high", priority=90, cooldown_seconds=300)
        low = _temp_fan_rule(id="low", priority=10, actions=[PWMAction("fan_exhaust", 30)])
        engine, channel = await _make_engine(tmp_path, high, low)

        await engine.tick(T0)
        assert channel.state["fan_exhaust"] == ("ON", None)

        report = await engine.tick(T0 + timedelta(seconds=5))
        assert report.outcomes("high") == ["suppressed-cooldown"]
        assert report.fired_rules == ["low"]

    @pytest.mark.asyncio
    async def test_max_executions(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule(max_executions=1))
        await engine.tick(T0)
        report = await engine.tick(T0 + timedelta(seconds=5))
        assert report.commands == []
        assert report.outcomes("temp-fan") == ["suppressed-limit"]


# ===========================================================================
# Conflicts
# ===========================================================================

class TestConflicts:
    @pytest.mark.asyncio
    async def test_priority_80_beats_50(self, tmp_path):
        on = _temp_fan_rule(id="fan-on", priority=80, actions=[RelayAction("fan", "ON")])
        off = _temp_fan_rule(id="fan-off", priority=50, actions=[RelayAction("fan", "OFF")])
        engine, channel = await _make_engine(tmp_path, on, off)

        report = await engine.tick(T0)

        assert report.commands == [DeviceCommand("fan", "ON")]
        assert channel.state == {"fan": ("ON", None)}
        assert report.outcomes("fan-on") == ["fired"]
        assert report.outcomes("fan-off") == ["overridden"]
        assert engine.store.get("fan-off").trigger_count == 0
        assert engine.store.get("fan-on").trigger_count == 1

    @pytest.mark.asyncio
    async def test_partial_override(self, tmp_path):
        high = _temp_fan_rule(id="high", priority=80, actions=[RelayAction("fan", "ON")])
        low = _temp_fan_rule(
            id="low", priority=20,
            actions=[RelayAction("fan", "OFF"), RelayAction("light", "ON")],
        )
        engine, channel = await _make_engine(tmp_path, high, low)

        report = await engine.tick(T0)

        assert channel.state == {"fan": ("ON", None), "light": ("ON", None)}
        assert sorted(report.outcomes("low")) == ["fired", "overridden"]
        overridden = [e for e in report.events if e.outcome is Outcome.OVERRIDDEN]
        assert overridden[0].actions == [{"device": "fan", "command": "OFF"}]
        assert engine.store.get("low").trigger_count == 1


# ===========================================================================
# Dispatch outcomes
# ===========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_idempotent_across_ticks(self, tmp_path):
        rule = _temp_fan_rule(id="light-on", actions=[RelayAction("light", "ON")])
        engine, channel = await _make_engine(tmp_path, rule)

        await engine.tick(T0)
        state_after_first = dict(channel.state)
        await engine.tick(T0 + timedelta(seconds=5))

        assert channel.state == state_after_first
        assert [e.outcome for e in engine.history] == [Outcome.FIRED, Outcome.FIRED]

    @pytest.mark.asyncio
    async def test_failed_dispatch_recorded_and_isolated(self, tmp_path):
        rule = _temp_fan_rule(actions=[RelayAction("heater", "OFF"), RelayAction("fan_exhaust", "ON")])
        engine, channel = await _make_engine(
            tmp_path, rule, channel=RecordingChannel(fail_devices={"heater"}),
        )

        report = await engine.tick(T0)

        assert channel.state == {"fan_exhaust": ("ON", None)}
        by_outcome = {e.outcome: e for e in report.events}
        assert by_outcome[Outcome.FAILED].actions == [{"device": "heater", "command": "OFF"}]
        assert "offline" in by_outcome[Outcome.FAILED].detail
        assert by_outcome[Outcome.FIRED].actions == [{"device": "fan_exhaust", "command": "ON"}]

    @pytest.mark.asyncio
    async def test_failed_attempt_still_advances_bookkeeping(self, tmp_path):
        engine, _ = await _make_engine(
            tmp_path, _temp_fan_rule(cooldown_seconds=60),
            channel=RecordingChannel(fail_devices={"fan_exhaust"}),
        )
        report = await engine.tick(T0)
        assert report.outcomes("temp-fan") == ["failed"]
        assert engine.store.get("temp-fan").trigger_count == 1

        again = await engine.tick(T0 + timedelta(seconds=10))
        assert again.outcomes("temp-fan") == ["suppressed-cooldown"]

    @pytest.mark.asyncio
    async def test_cancelled_dispatch_is_unknown(self, tmp_path):
        channel = GatedChannel()
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule(), channel=channel)

        task = asyncio.create_task(engine.tick(T0))
        await channel.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        events = list(engine.history)
        assert [e.outcome for e in events] == [Outcome.UNKNOWN]
        assert engine.store.get("temp-fan").trigger_count == 0
        assert engine.phase is TickPhase.IDLE


# ===========================================================================
# Schedules
# ===========================================================================

class TestScheduleRules:
    @pytest.mark.asyncio
    async def test_daily_schedule_fires_once_per_minute(self, tmp_path):
        rule = Rule(
            id="lights-on",
            name="Lights on",
            schedule=Schedule(time="06:00"),
            actions=[RelayAction("light", "ON")],
        )
        engine, channel = await _make_engine(tmp_path, rule)
        six = datetime(2024, 5, 6, 6, 0, 0)

        assert (await engine.tick(six)).fired_rules == ["lights-on"]
        assert (await engine.tick(six + timedelta(seconds=5))).fired_rules == []
        assert (await engine.tick(six + timedelta(seconds=60))).fired_rules == []
        assert (await engine.tick(six + timedelta(days=1))).fired_rules == ["lights-on"]
        assert engine.store.get("lights-on").trigger_count == 2

    @pytest.mark.asyncio
    async def test_time_window_rule(self, tmp_path):
        rule = _temp_fan_rule(
            id="night-heat",
            conditions=[TimeCondition(time_mode="between", start_time="22:00", end_time="04:00")],
            actions=[RelayAction("heater", "ON")],
            else_actions=[RelayAction("heater", "OFF")],
        )
        engine, channel = await _make_engine(tmp_path, rule)
        await engine.tick(datetime(2024, 5, 6, 12, 0))
        assert channel.state["heater"] == ("OFF", None)
        await engine.tick(datetime(2024, 5, 6, 23, 30))
        assert channel.state["heater"] == ("ON", None)


# ===========================================================================
# Isolation and skipping
# ===========================================================================

class TestIsolation:
    @pytest.mark.asyncio
    async def test_rule_error_is_isolated(self, tmp_path, monkeypatch):
        real = engine_mod.evaluate_rule

        def flaky(rule, snapshot, now):
            if rule.id == "bad":
                raise RuntimeError("boom")
            return real(rule, snapshot, now)

        monkeypatch.setattr(engine_mod, "evaluate_rule", flaky)
        bad = _temp_fan_rule(id="bad", actions=[RelayAction("heater", "ON")])
        engine, channel = await _make_engine(tmp_path, bad, _temp_fan_rule())

        report = await engine.tick(T0)

        assert report.outcomes("bad") == ["errored"]
        assert "boom" in [e for e in report.events if e.rule_id == "bad"][0].detail
        assert report.fired_rules == ["temp-fan"]
        assert channel.state == {"fan_exhaust": ("ON", None)}

    @pytest.mark.asyncio
    async def test_dry_run_rule_is_simulated(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule(dry_run=True))
        report = await engine.tick(T0)
        assert report.outcomes("temp-fan") == ["simulated"]
        assert channel.published == []
        assert engine.store.get("temp-fan").trigger_count == 0

    @pytest.mark.asyncio
    async def test_no_snapshot_skips_tick(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule(), readings={})
        assert await engine.tick(T0) is None
        assert engine.ticks_skipped == 1
        assert engine.ticks_run == 0
        assert len(engine.history) == 0
        assert engine.phase is TickPhase.IDLE

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, tmp_path):
        channel = GatedChannel()
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule(), channel=channel)

        first = asyncio.create_task(engine.tick(T0))
        await channel.entered.wait()
        assert engine.busy
        assert await engine.tick(T0) is None
        assert engine.ticks_skipped == 1

        channel.gate.set()
        report = await first
        assert report.fired_rules == ["temp-fan"]

    @pytest.mark.asyncio
    async def test_edit_during_tick_does_not_apply_mid_tick(self, tmp_path):
        channel = GatedChannel()
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule(), channel=channel)

        first = asyncio.create_task(engine.tick(T0))
        await channel.entered.wait()
        await engine.store.delete("temp-fan")
        channel.gate.set()
        report = await first

        assert report.fired_rules == ["temp-fan"]
        assert engine.store.get("temp-fan") is None


# ===========================================================================
# Clock step back and deleted rules
# ===========================================================================

class TestClockAndLifecycle:
    @pytest.mark.asyncio
    async def test_wall_clock_step_back_still_records_history(self, tmp_path):
        engine, channel = await _make_engine(tmp_path, _temp_fan_rule())
        await engine.tick(T0)

        report = await engine.tick(T0 - timedelta(minutes=30))

        assert report is not None
        assert report.fired_rules == ["temp-fan"]
        assert len(channel.published) == 2
        assert engine.store.get("temp-fan").trigger_count == 2
        events = list(engine.history)
        assert [e.outcome for e in events] == [Outcome.FIRED, Outcome.FIRED]
        assert [e.timestamp for e in events] == [T0, T0 - timedelta(minutes=30)]
        assert engine.phase is TickPhase.IDLE

    @pytest.mark.asyncio
    async def test_recreated_rule_does_not_inherit_cooldown(self, tmp_path):
        rule = _temp_fan_rule(cooldown_seconds=300)
        engine, channel = await _make_engine(tmp_path, rule)
        await engine.tick(T0)

        await engine.store.delete("temp-fan")
        await engine.tick(T0 + timedelta(seconds=5))
        await engine.store.create(rule)
        report = await engine.tick(T0 + timedelta(seconds=10))

        assert report.fired_rules == ["temp-fan"]
        assert engine.store.get("temp-fan").trigger_count == 1


# ===========================================================================
# Rule dependencies and conflicts
# ===========================================================================

class TestDependencies:
    @pytest.mark.asyncio
    async def test_disabled_dependency_suppresses(self, tmp_path):
        parent = _temp_fan_rule(id="parent", enabled=False, actions=[RelayAction("light", "ON")])
        child = _temp_fan_rule(id="child", depends_on=["parent"])
        engine, channel = await _make_engine(tmp_path, parent, child)

        report = await engine.tick(T0)

        assert report.outcomes("child") == ["suppressed-dependency"]
        assert channel.published == []
        assert engine.store.get("child").trigger_count == 0

    @pytest.mark.asyncio
    async def test_enabled_dependency_allows(self, tmp_path):
        parent = _temp_fan_rule(id="parent", actions=[RelayAction("light", "ON")])
        child = _temp_fan_rule(id="child", depends_on=["parent"])
        engine, channel = await _make_engine(tmp_path, parent, child)

        report = await engine.tick(T0)

        assert sorted(report.fired_rules) == ["child", "parent"]
        assert channel.state == {"light": ("ON", None), "fan_exhaust": ("ON", None)}

    @pytest.mark.asyncio
    async def test_deleted_dependency_suppresses(self, tmp_path):
        parent = _temp_fan_rule(id="parent", actions=[RelayAction("light", "ON")])
        child = _temp_fan_rule(id="child", depends_on=["parent"])
        engine, channel = await _make_engine(tmp_path, parent, child)
        await engine.store.delete("parent")

        report = await engine.tick(T0)

        assert report.outcomes("child") == ["suppressed-dependency"]
        assert "parent" in report.events[0].detail


class TestConflictingRules:
    @pytest.mark.asyncio
    async def test_recent_conflicting_firing_suppresses(self, tmp_path):
        heater = _temp_fan_rule(
            id="heater-on", cooldown_seconds=300, actions=[RelayAction("heater", "ON")],
        )
        dry = _temp_fan_rule(
            id="dehumidify",
            conflicts_with=["heater-on"],
            conditions=[SensorCondition(sensor="humidity", operator=">", value=70)],
            actions=[RelayAction("dehumidifier", "ON")],
        )
        engine, channel = await _make_engine(
            tmp_path, heater, dry, readings={"temp": 29.0, "humidity": 50.0},
        )
        assert (await engine.tick(T0)).fired_rules == ["heater-on"]

        engine.sensors.update({"humidity": 80.0}, at=T0)
        report = await engine.tick(T0 + timedelta(seconds=30))
        assert report.outcomes("dehumidify") == ["suppressed-conflict"]
        assert report.outcomes("heater-on") == ["suppressed-cooldown"]
        assert "dehumidifier" not in channel.state

        later = await engine.tick(T0 + timedelta(seconds=61))
        assert later.fired_rules == ["dehumidify"]
        assert channel.state["dehumidifier"] == ("ON", None)

    @pytest.mark.asyncio
    async def test_simulate_reports_block(self, tmp_path):
        parent = _temp_fan_rule(id="parent", enabled=False, actions=[RelayAction("light", "ON")])
        child = _temp_fan_rule(id="child", depends_on=["parent"])
        engine, _ = await _make_engine(tmp_path, parent, child)

        result = engine.simulate("child", now=T0)
        assert result["matched"] is True
        assert "parent" in result["blocked"]


# ===========================================================================
# Simulation and status
# ===========================================================================

class TestSimulateAndStatus:
    @pytest.mark.asyncio
    async def test_simulate_with_readings(self, tmp_path):
        engine, channel = await _make_engine(
            tmp_path, _temp_fan_rule(else_actions=[RelayAction("fan_exhaust", "OFF")]),
        )
        result = engine.simulate("temp-fan", readings={"temp": 10.0}, now=T0)
        assert result["matched"] is False
        assert result["branch"] == "else"
        assert result["actions"] == [{"device": "fan_exhaust", "command": "OFF"}]
        assert result["cooldown_ok"] is True
        assert channel.published == []
        assert len(engine.history) == 0

    @pytest.mark.asyncio
    async def test_simulate_uses_sensor_cache(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule())
        result = engine.simulate("temp-fan", now=T0)
        assert result["matched"] is True
        assert result["readings"] == {"temp": 29.0}

    @pytest.mark.asyncio
    async def test_simulate_unknown_rule(self, tmp_path):
        engine, _ = await _make_engine(tmp_path)
        with pytest.raises(RuleNotFoundError):
            engine.simulate("missing")

    @pytest.mark.asyncio
    async def test_simulate_without_data(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule(), readings={})
        with pytest.raises(SnapshotUnavailable):
            engine.simulate("temp-fan")

    @pytest.mark.asyncio
    async def test_status(self, tmp_path):
        engine, _ = await _make_engine(tmp_path, _temp_fan_rule())
        await engine.tick(T0)
        status = engine.status()
        assert status["phase"] == "idle"
        assert status["ticks_run"] == 1
        assert status["rule_count"] == 1
        assert status["last_snapshot"] == {"temp": 29.0}
        assert status["history"] == {"fired": 1}
        assert "temp-fan" in status["rules"]


class TestDescribeRules:
    def test_no_rules(self):
        assert describe_rules([]) == "No active automation rules."

    def test_condition_and_schedule_rules(self):
        text = describe_rules([
            _temp_fan_rule(
                conditions=[
                    SensorCondition(sensor="temp", operator=">", value=28),
                    SensorCondition(sensor="humidity", operator="<", value=40, logic_operator="OR"),
                ],
                else_actions=[RelayAction("fan_exhaust", "OFF")],
            ),
            Rule(id="lights", name="Lights", schedule=Schedule(time="06:00"),
                 actions=[PWMAction("grow_light", 80)]),
            _temp_fan_rule(id="off", enabled=False),
        ])
        assert "Active automation rules (2)" in text
        assert "IF temp > 28 OR humidity < 40 THEN fan_exhaust ON ELSE fan_exhaust OFF" in text
        assert "AT 06:00 THEN grow_light PWM 80%" in text
        assert "[off]" not in text
