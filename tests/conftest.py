"""Pytest fixtures for gpuctl tests. No hardware needed."""
import pytest

from gpuctl.config import DaemonSettings
from gpuctl.domain import (FanCurve, MemoryUsage, Temperature, TelemetrySnapshot,
                           Utilization)
from gpuctl.events import EventBus
from gpuctl.mock import MockDevice


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Every event published on `bus`, as (name, payload)."""
    events = []
    for name in ("action_applied", "action_dry_run", "cycle_completed", "daemon_state",
                 "alert_raised", "alert_cleared"):
        bus.subscribe(name, lambda payload, name=name: events.append((name, payload)))
    return events


@pytest.fixture
def device() -> MockDevice:
    return MockDevice(index=0, name="NVIDIA GeForce RTX 4090")


@pytest.fixture
def curve() -> FanCurve:
    return FanCurve.default_curve()


@pytest.fixture
def fast_settings(curve):
    """Settings with sleeps short enough for tests."""
    def _settings(**overrides) -> DaemonSettings:
        values = dict(curve=curve, interval=0.01, retry_interval=0.01)
        values.update(overrides)
        return DaemonSettings(**values)
    return _settings


@pytest.fixture
def make_snapshot():
    """Build a healthy snapshot, overriding any field."""
    def _make(**overrides) -> TelemetrySnapshot:
        values = dict(
            gpu_index=0,
            temperature=Temperature(50),
            fan_speeds=(),
            power_draw_watts=150.0,
            power_limit_watts=300,
            utilization=Utilization(gpu_percent=40, memory_percent=20),
            memory=MemoryUsage(used_bytes=4, total_bytes=24),
        )
        if isinstance(overrides.get("temperature"), int):
            overrides["temperature"] = Temperature(overrides["temperature"])
        values.update(overrides)
        return TelemetrySnapshot(**values)
    return _make
