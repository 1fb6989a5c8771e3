"""Tests for GPU resolution and the mock provider."""
import pytest

from gpuctl.device import GpuHandle, resolve_handle
from gpuctl.domain import FanPolicy, FanSpeedPercent, PowerConstraints, PowerLimitWatts
from gpuctl.errors import CapabilityError, CapabilityReason, GpuNotFoundError
from gpuctl.mock import MockDevice, MockSession


@pytest.fixture
def handles():
    return [
        GpuHandle(1, "NVIDIA GeForce RTX 3090", "GPU-bbbb-2222"),
        GpuHandle(0, "NVIDIA GeForce RTX 4090", "GPU-aaaa-1111"),
        GpuHandle(2, "NVIDIA GeForce RTX 4090", "GPU-cccc-3333"),
    ]


class TestResolveHandle:

    def test_by_int_index(self, handles):
        assert resolve_handle(1, handles).uuid == "GPU-bbbb-2222"

    def test_by_digit_string_index(self, handles):
        assert resolve_handle("2", handles).uuid == "GPU-cccc-3333"

    def test_digits_without_matching_index_fall_back_to_name(self, handles):
        # No GPU has index 4090, so the selector is a name substring.
        assert resolve_handle("4090", handles).index == 0

    def test_by_uuid_case_insensitive(self, handles):
        assert resolve_handle("gpu-BBBB-2222", handles).index == 1

    def test_by_name_substring_first_index_wins(self, handles):
        assert resolve_handle("rtx 4090", handles).index == 0

    @pytest.mark.parametrize("selector", [7, "7x", "A100", "", "GPU-dddd"])
    def test_not_found(self, handles, selector):
        with pytest.raises(GpuNotFoundError):
            resolve_handle(selector, handles)

    def test_session_open_selector(self):
        session = MockSession.with_names(["Quadro P400", "NVIDIA GeForce RTX 4090"])
        device = session.open_selector("4090")
        assert device.handle.index == 1
        assert session.list_handles()[0].name == "Quadro P400"


class TestMockDevice:

    def test_defaults(self):
        device = MockDevice()
        assert device.fan_count() == 2
        assert device.fan_speed(0) == FanSpeedPercent(50)
        assert device.fan_policy() is FanPolicy.AUTO
        assert device.power_constraints() == PowerConstraints(100, 400, 300)
        assert device.power_limit().watts == 300

    def test_manual_speed_requires_manual_policy(self):
        device = MockDevice()
        with pytest.raises(CapabilityError) as excinfo:
            device.set_fan_speed(0, FanSpeedPercent(80))
        assert excinfo.value.reason is CapabilityReason.UNSUPPORTED

    def test_unknown_fan(self):
        device = MockDevice(fan_count=1)
        device.set_fan_policy(FanPolicy.MANUAL)
        with pytest.raises(CapabilityError) as excinfo:
            device.set_fan_speed(1, FanSpeedPercent(80))
        assert excinfo.value.reason is CapabilityReason.CONSTRAINT

    def test_power_limit_checked_against_own_constraints(self):
        device = MockDevice(power_constraints=PowerConstraints(100, 200, 150))
        foreign = PowerLimitWatts(350, PowerConstraints(100, 400, 300))
        with pytest.raises(CapabilityError):
            device.set_power_limit(foreign)
        assert device.calls == []

    def test_fail_n_times(self):
        device = MockDevice()
        device.fail("snapshot", times=2)
        for _ in range(2):
            with pytest.raises(CapabilityError):
                device.snapshot()
        assert device.snapshot().gpu_index == 0

    def test_fail_forever_until_cleared(self):
        device = MockDevice()
        device.fail("temperature", times=None)
        for _ in range(5):
            with pytest.raises(CapabilityError):
                device.temperature()
        device.clear_failures()
        assert device.temperature().celsius == 45

    def test_feed_temperatures_consumed_per_snapshot(self):
        device = MockDevice()
        device.feed_temperatures([60, 70])
        temps = [device.snapshot().temperature.celsius for _ in range(3)]
        assert temps == [60, 70, 70]
        assert device.snapshot_count == 3

    def test_snapshot_is_fresh_object(self):
        device = MockDevice()
        assert device.snapshot() is not device.snapshot()

    def test_session_unknown_handle(self):
        session = MockSession([MockDevice(index=0)])
        with pytest.raises(GpuNotFoundError):
            session.open(GpuHandle(5, "x", "y"))
