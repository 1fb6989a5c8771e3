"""Tests for the NVML provider against an in-process fake of the pynvml module."""
from types import SimpleNamespace

import pytest

from gpuctl.domain import FanPolicy, FanSpeedPercent, PowerLimitWatts, Temperature
from gpuctl.errors import (CapabilityError, CapabilityReason, DomainValidationError,
                           GpuNotFoundError)
from gpuctl.nvml import NvmlSession

GIB = 1024 ** 3


class FakeNVMLError(Exception):
    def __init__(self, value):
        self.value = value
        super().__init__(f"NVML error {value}")


class FakeNvml:
    """Just enough of pynvml, with return codes matching the real bindings."""

    NVMLError = FakeNVMLError
    NVML_ERROR_UNINITIALIZED = 1
    NVML_ERROR_INVALID_ARGUMENT = 2
    NVML_ERROR_NOT_SUPPORTED = 3
    NVML_ERROR_NO_PERMISSION = 4
    NVML_ERROR_GPU_IS_LOST = 15
    NVML_ERROR_UNKNOWN = 999

    NVML_TEMPERATURE_GPU = 0
    NVML_TEMPERATURE_THRESHOLD_SLOWDOWN = 1
    NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_MIN = 4
    NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_CURR = 5
    NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_MAX = 6
    NVML_FAN_POLICY_TEMPERATURE_CONTINOUS_SW = 0
    NVML_FAN_POLICY_MANUAL = 1
    NVML_MEMORY_ERROR_TYPE_CORRECTED = 0
    NVML_MEMORY_ERROR_TYPE_UNCORRECTED = 1
    NVML_VOLATILE_ECC = 0

    nvmlClocksThrottleReasonSwPowerCap = 0x4
    nvmlClocksThrottleReasonSwThermalSlowdown = 0x20
    nvmlClocksThrottleReasonHwThermalSlowdown = 0x40
    nvmlClocksThrottleReasonHwPowerBrakeSlowdown = 0x80

    def __init__(self, names=("NVIDIA GeForce RTX 4090",)):
        self.names = list(names)
        self.failures = {}
        self.initialized = False
        self.temperature = 55
        self.fan_speeds = [40, 40]
        self.fan_policy = [0, 0]
        self.power_limit_mw = 350000
        self.constraints_mw = (100000, 450000)
        self.thresholds = {1: 90, 4: 60, 5: 83, 6: 90}
        self.throttle_mask = 0
        self.ecc = None
        self.calls = []

    def _check(self, name):
        if name in self.failures:
            raise FakeNVMLError(self.failures[name])

    def nvmlInit(self):
        self._check("nvmlInit")
        self.initialized = True

    def nvmlShutdown(self):
        self.initialized = False

    def nvmlDeviceGetCount(self):
        return len(self.names)

    def nvmlDeviceGetHandleByIndex(self, index):
        if index >= len(self.names):
            raise FakeNVMLError(self.NVML_ERROR_INVALID_ARGUMENT)
        return index

    def nvmlDeviceGetName(self, handle):
        return self.names[handle].encode()

    def nvmlDeviceGetUUID(self, handle):
        return f"GPU-fake-{handle}"

    def nvmlDeviceGetTemperature(self, handle, sensor):
        self._check("nvmlDeviceGetTemperature")
        return self.temperature

    def nvmlDeviceGetNumFans(self, handle):
        return len(self.fan_speeds)

    def nvmlDeviceGetFanSpeed_v2(self, handle, fan):
        return self.fan_speeds[fan]

    def nvmlDeviceSetFanSpeed_v2(self, handle, fan, speed):
        self._check("nvmlDeviceSetFanSpeed_v2")
        self.calls.append(("fan", fan, speed))
        self.fan_speeds[fan] = speed

    def nvmlDeviceGetFanControlPolicy_v2(self, handle, fan):
        return self.fan_policy[fan]

    def nvmlDeviceSetFanControlPolicy(self, handle, fan, policy):
        self._check("nvmlDeviceSetFanControlPolicy")
        self.calls.append(("policy", fan, policy))
        self.fan_policy[fan] = policy

    def nvmlDeviceGetPowerManagementLimitConstraints(self, handle):
        return self.constraints_mw

    def nvmlDeviceGetPowerManagementDefaultLimit(self, handle):
        return 350000

    def nvmlDeviceGetPowerManagementLimit(self, handle):
        return self.power_limit_mw

    def nvmlDeviceSetPowerManagementLimit(self, handle, milliwatts):
        self._check("nvmlDeviceSetPowerManagementLimit")
        self.calls.append(("power", milliwatts))
        self.power_limit_mw = milliwatts

    def nvmlDeviceGetTemperatureThreshold(self, handle, threshold):
        if threshold not in self.thresholds:
            raise FakeNVMLError(self.NVML_ERROR_NOT_SUPPORTED)
        return self.thresholds[threshold]

    def nvmlDeviceSetTemperatureThreshold(self, handle, threshold, value):
        self._check("nvmlDeviceSetTemperatureThreshold")
        self.calls.append(("threshold", threshold, value))
        self.thresholds[threshold] = value

    def nvmlDeviceGetCurrPcieLinkGeneration(self, handle):
        return 3

    def nvmlDeviceGetMaxPcieLinkGeneration(self, handle):
        return 4

    def nvmlDeviceGetCurrPcieLinkWidth(self, handle):
        return 16

    def nvmlDeviceGetMaxPcieLinkWidth(self, handle):
        return 16

    def nvmlDeviceGetPcieReplayCounter(self, handle):
        return 12

    def nvmlDeviceGetTotalEccErrors(self, handle, error_type, counter_type):
        if self.ecc is None:
            raise FakeNVMLError(self.NVML_ERROR_NOT_SUPPORTED)
        return self.ecc[error_type]

    def nvmlDeviceGetCurrentClocksThrottleReasons(self, handle):
        return self.throttle_mask

    def nvmlDeviceGetUtilizationRates(self, handle):
        return SimpleNamespace(gpu=60, memory=30)

    def nvmlDeviceGetMemoryInfo(self, handle):
        return SimpleNamespace(used=8 * GIB, total=24 * GIB)

    def nvmlDeviceGetPowerUsage(self, handle):
        return 200500


@pytest.fixture
def nvml():
    return FakeNvml(names=["NVIDIA RTX A4000", "NVIDIA GeForce RTX 4090"])


@pytest.fixture
def device(nvml):
    with NvmlSession(nvml=nvml) as session:
        yield session.open_selector("4090")


class TestSession:

    def test_lists_handles_and_decodes_names(self, nvml):
        with NvmlSession(nvml=nvml) as session:
            handles = session.list_handles()
        assert [h.name for h in handles] == ["NVIDIA RTX A4000", "NVIDIA GeForce RTX 4090"]
        assert handles[1].uuid == "GPU-fake-1"

    def test_shutdown_on_exit(self, nvml):
        with NvmlSession(nvml=nvml):
            assert nvml.initialized
        assert not nvml.initialized

    def test_init_failure(self, nvml):
        nvml.failures["nvmlInit"] = FakeNvml.NVML_ERROR_NO_PERMISSION
        with pytest.raises(CapabilityError) as excinfo:
            with NvmlSession(nvml=nvml):
                pass
        assert excinfo.value.reason is CapabilityReason.PERMISSION

    def test_requires_initialization(self, nvml):
        with pytest.raises(CapabilityError):
            NvmlSession(nvml=nvml).list_handles()

    def test_unknown_selector(self, nvml):
        with NvmlSession(nvml=nvml) as session:
            with pytest.raises(GpuNotFoundError):
                session.open_selector("H100")


class TestErrorMapping:

    @pytest.mark.parametrize("code,reason", [
        (FakeNvml.NVML_ERROR_NO_PERMISSION, CapabilityReason.PERMISSION),
        (FakeNvml.NVML_ERROR_NOT_SUPPORTED, CapabilityReason.UNSUPPORTED),
        (FakeNvml.NVML_ERROR_INVALID_ARGUMENT, CapabilityReason.CONSTRAINT),
        (FakeNvml.NVML_ERROR_GPU_IS_LOST, CapabilityReason.UNREACHABLE),
        (FakeNvml.NVML_ERROR_UNINITIALIZED, CapabilityReason.UNREACHABLE),
        (FakeNvml.NVML_ERROR_UNKNOWN, CapabilityReason.UNKNOWN),
    ])
    def test_set_fan_speed_errors(self, nvml, device, code, reason):
        nvml.failures["nvmlDeviceSetFanSpeed_v2"] = code
        with pytest.raises(CapabilityError) as excinfo:
            device.set_fan_speed(0, FanSpeedPercent(50))
        assert excinfo.value.reason is reason
        assert excinfo.value.operation == "set_fan_speed"
        assert "RTX 4090" in str(excinfo.value)


class TestNvmlDevice:

    def test_reads(self, device):
        assert device.temperature() == Temperature(55)
        assert device.fan_count() == 2
        assert device.fan_speed(1) == FanSpeedPercent(40)
        assert device.fan_policy() is FanPolicy.AUTO

    def test_fan_speed_above_100_is_clamped(self, nvml, device):
        nvml.fan_speeds[0] = 104
        assert device.fan_speed(0).value == 100

    def test_set_fan_policy_applies_to_every_fan(self, nvml, device):
        device.set_fan_policy(FanPolicy.MANUAL)
        assert nvml.calls == [("policy", 0, 1), ("policy", 1, 1)]
        assert device.fan_policy() is FanPolicy.MANUAL

    def test_power_in_watts(self, nvml, device):
        constraints = device.power_constraints()
        assert (constraints.min_watts, constraints.max_watts,
                constraints.default_watts) == (100, 450, 350)
        device.set_power_limit(PowerLimitWatts(280, constraints))
        assert nvml.calls == [("power", 280000)]
        assert device.power_limit().watts == 280

    def test_fractional_minimum_rounds_up(self, nvml, device):
        nvml.constraints_mw = (100500, 450000)
        constraints = device.power_constraints()
        assert constraints.min_watts == 101
        assert not constraints.contains(100)
        with pytest.raises(DomainValidationError):
            PowerLimitWatts(100, constraints)

    def test_acoustic_limits(self, nvml, device):
        limits = device.acoustic_limits()
        assert (limits.min, limits.current, limits.max) == (
            Temperature(60), Temperature(83), Temperature(90))
        device.set_acoustic_limit(Temperature(75))
        assert nvml.thresholds[5] == 75

    def test_snapshot(self, nvml, device):
        nvml.throttle_mask = FakeNvml.nvmlClocksThrottleReasonHwThermalSlowdown
        snapshot = device.snapshot()

        assert snapshot.gpu_index == 1
        assert snapshot.temperature == Temperature(55)
        assert snapshot.fan_speeds == (FanSpeedPercent(40), FanSpeedPercent(40))
        assert snapshot.power_draw_watts == 200.5
        assert snapshot.power_limit_watts == 350
        assert snapshot.utilization.gpu_percent == 60
        assert snapshot.memory.total_bytes == 24 * GIB
        assert snapshot.pcie.current_generation == 3
        assert snapshot.pcie.replay_count == 12
        assert snapshot.slowdown_temperature == Temperature(90)
        assert snapshot.thermal_throttling
        assert not snapshot.power_throttling

    def test_unsupported_ecc_reads_as_none(self, device):
        assert device.snapshot().ecc is None

    def test_ecc_counters(self, nvml, device):
        nvml.ecc = {0: 7, 1: 0}
        ecc = device.snapshot().ecc
        assert (ecc.correctable, ecc.uncorrectable) == (7, 0)

    def test_unsupported_required_read_raises(self, nvml, device):
        nvml.failures["nvmlDeviceGetTemperature"] = FakeNvml.NVML_ERROR_GPU_IS_LOST
        with pytest.raises(CapabilityError) as excinfo:
            device.snapshot()
        assert excinfo.value.reason is CapabilityReason.UNREACHABLE
