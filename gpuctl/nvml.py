#!/usr/bin/env python3
"""
NVML-backed device provider.

Wraps the NVIDIA Management Library through the pynvml bindings
(nvidia-ml-py). Every NVML failure is translated into a CapabilityError that
says why the call failed; callers never see a raw NVMLError.

Mutating calls generally require root.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pynvml

from .device import Device, GpuHandle, Session
from .domain import (AcousticLimits, EccCounters, FanPolicy, FanSpeedPercent, MemoryUsage,
                     PcieLink, PowerConstraints, PowerLimitWatts, Temperature,
                     TelemetrySnapshot, Utilization)
from .errors import CapabilityError, CapabilityReason, GpuNotFoundError

# NVML return codes → why the capability failed. Missing names (older
# bindings) are skipped.
_REASONS = (
    ("NVML_ERROR_NO_PERMISSION", CapabilityReason.PERMISSION),
    ("NVML_ERROR_NOT_SUPPORTED", CapabilityReason.UNSUPPORTED),
    ("NVML_ERROR_FUNCTION_NOT_FOUND", CapabilityReason.UNSUPPORTED),
    ("NVML_ERROR_INVALID_ARGUMENT", CapabilityReason.CONSTRAINT),
    ("NVML_ERROR_GPU_IS_LOST", CapabilityReason.UNREACHABLE),
    ("NVML_ERROR_UNINITIALIZED", CapabilityReason.UNREACHABLE),
    ("NVML_ERROR_DRIVER_NOT_LOADED", CapabilityReason.UNREACHABLE),
    ("NVML_ERROR_LIBRARY_NOT_FOUND", CapabilityReason.UNREACHABLE),
    ("NVML_ERROR_NOT_FOUND", CapabilityReason.UNREACHABLE),
)


def _reason_map(nvml) -> Dict[int, CapabilityReason]:
    return {getattr(nvml, name): reason for name, reason in _REASONS if hasattr(nvml, name)}


def _text(value) -> str:
    # Older bindings return bytes for names and UUIDs.
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class NvmlDevice(Device):
    """One GPU driven through NVML."""

    def __init__(self, handle: GpuHandle, raw_handle: Any, nvml=pynvml):
        self._handle = handle
        self._raw = raw_handle
        self._nvml = nvml
        self._reasons = _reason_map(nvml)

    def _error(self, operation: str, exc: Exception) -> CapabilityError:
        reason = self._reasons.get(getattr(exc, "value", None), CapabilityReason.UNKNOWN)
        return CapabilityError(str(exc), reason=reason, device=str(self._handle),
                               operation=operation)

    def _call(self, operation: str, fn: Callable, *args):
        """Invoke an NVML function, translating failures."""
        try:
            return fn(self._raw, *args)
        except self._nvml.NVMLError as exc:
            raise self._error(operation, exc)

    def _optional(self, operation: str, fn: Callable, *args):
        """Like _call, but an unsupported query reads as None."""
        try:
            return self._call(operation, fn, *args)
        except CapabilityError as exc:
            if exc.reason is CapabilityReason.UNSUPPORTED:
                logging.debug("%s: %s not supported", self._handle, operation)
                return None
            raise

    @property
    def handle(self) -> GpuHandle:
        return self._handle

    def temperature(self) -> Temperature:
        nvml = self._nvml
        return Temperature(int(self._call("temperature", nvml.nvmlDeviceGetTemperature,
                                          nvml.NVML_TEMPERATURE_GPU)))

    def fan_count(self) -> int:
        return int(self._call("fan_count", self._nvml.nvmlDeviceGetNumFans))

    def fan_speed(self, index: int) -> FanSpeedPercent:
        raw = int(self._call("fan_speed", self._nvml.nvmlDeviceGetFanSpeed_v2, index))
        # Some boards report slightly above 100 at full tilt.
        return FanSpeedPercent(min(raw, FanSpeedPercent.MAX))

    def set_fan_speed(self, index: int, speed: FanSpeedPercent) -> None:
        self._call("set_fan_speed", self._nvml.nvmlDeviceSetFanSpeed_v2, index, speed.value)
        logging.debug("%s fan %d → %s", self._handle, index, speed)

    def fan_policy(self) -> FanPolicy:
        nvml = self._nvml
        if self.fan_count() == 0:
            return FanPolicy.AUTO
        raw = self._call("fan_policy", nvml.nvmlDeviceGetFanControlPolicy_v2, 0)
        return FanPolicy.MANUAL if raw == nvml.NVML_FAN_POLICY_MANUAL else FanPolicy.AUTO

    def set_fan_policy(self, policy: FanPolicy) -> None:
        nvml = self._nvml
        if policy is FanPolicy.MANUAL:
            raw = nvml.NVML_FAN_POLICY_MANUAL
        else:
            raw = nvml.NVML_FAN_POLICY_TEMPERATURE_CONTINOUS_SW
        for index in range(self.fan_count()):
            self._call("set_fan_policy", nvml.nvmlDeviceSetFanControlPolicy, index, raw)
        logging.debug("%s fan policy → %s", self._handle, policy)

    def power_constraints(self) -> PowerConstraints:
        nvml = self._nvml
        min_mw, max_mw = self._call("power_constraints",
                                    nvml.nvmlDeviceGetPowerManagementLimitConstraints)
        default_mw = self._call("power_constraints",
                                nvml.nvmlDeviceGetPowerManagementDefaultLimit)
        # Round the minimum up so a limit that passes validation is one NVML accepts.
        return PowerConstraints(min_watts=-(-int(min_mw) // 1000), max_watts=int(max_mw) // 1000,
                                default_watts=int(default_mw) // 1000)

    def power_limit(self) -> PowerLimitWatts:
        milliwatts = self._call("power_limit", self._nvml.nvmlDeviceGetPowerManagementLimit)
        return PowerLimitWatts(int(milliwatts) // 1000, self.power_constraints())

    def set_power_limit(self, limit: PowerLimitWatts) -> None:
        self._call("set_power_limit", self._nvml.nvmlDeviceSetPowerManagementLimit,
                   limit.milliwatts)
        logging.debug("%s power limit → %s", self._handle, limit)

    def _threshold(self, operation: str, name: str) -> Optional[Temperature]:
        nvml = self._nvml
        if not hasattr(nvml, name):
            return None
        value = self._optional(operation, nvml.nvmlDeviceGetTemperatureThreshold,
                               getattr(nvml, name))
        return Temperature(int(value)) if value is not None else None

    def acoustic_limits(self) -> AcousticLimits:
        return AcousticLimits(
            min=self._threshold("acoustic_limits", "NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_MIN"),
            current=self._threshold("acoustic_limits", "NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_CURR"),
            max=self._threshold("acoustic_limits", "NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_MAX"),
        )

    def set_acoustic_limit(self, temperature: Temperature) -> None:
        nvml = self._nvml
        self._call("set_acoustic_limit", nvml.nvmlDeviceSetTemperatureThreshold,
                   nvml.NVML_TEMPERATURE_THRESHOLD_ACOUSTIC_CURR, temperature.celsius)
        logging.debug("%s acoustic limit → %s", self._handle, temperature)

    def _pcie(self) -> Optional[PcieLink]:
        nvml = self._nvml
        values = [
            self._optional("snapshot", fn) for fn in (
                nvml.nvmlDeviceGetCurrPcieLinkGeneration,
                nvml.nvmlDeviceGetMaxPcieLinkGeneration,
                nvml.nvmlDeviceGetCurrPcieLinkWidth,
                nvml.nvmlDeviceGetMaxPcieLinkWidth,
            )
        ]
        if any(v is None for v in values):
            return None
        replays = self._optional("snapshot", nvml.nvmlDeviceGetPcieReplayCounter)
        cur_gen, max_gen, cur_width, max_width = (int(v) for v in values)
        return PcieLink(current_generation=cur_gen, max_generation=max_gen,
                        current_width=cur_width, max_width=max_width,
                        replay_count=int(replays or 0))

    def _ecc(self) -> Optional[EccCounters]:
        nvml = self._nvml
        corrected = self._optional("snapshot", nvml.nvmlDeviceGetTotalEccErrors,
                                   nvml.NVML_MEMORY_ERROR_TYPE_CORRECTED, nvml.NVML_VOLATILE_ECC)
        if corrected is None:
            return None
        uncorrected = self._optional("snapshot", nvml.nvmlDeviceGetTotalEccErrors,
                                     nvml.NVML_MEMORY_ERROR_TYPE_UNCORRECTED,
                                     nvml.NVML_VOLATILE_ECC)
        return EccCounters(correctable=int(corrected), uncorrectable=int(uncorrected or 0))

    def _throttling(self):
        nvml = self._nvml
        mask = self._optional("snapshot", nvml.nvmlDeviceGetCurrentClocksThrottleReasons)
        if mask is None:
            return False, False
        thermal = (nvml.nvmlClocksThrottleReasonSwThermalSlowdown
                   | nvml.nvmlClocksThrottleReasonHwThermalSlowdown)
        power = (nvml.nvmlClocksThrottleReasonSwPowerCap
                 | nvml.nvmlClocksThrottleReasonHwPowerBrakeSlowdown)
        return bool(mask & thermal), bool(mask & power)

    def snapshot(self) -> TelemetrySnapshot:
        nvml = self._nvml
        fans = tuple(self.fan_speed(i) for i in range(self.fan_count()))
        util = self._call("snapshot", nvml.nvmlDeviceGetUtilizationRates)
        mem = self._call("snapshot", nvml.nvmlDeviceGetMemoryInfo)
        draw_mw = self._call("snapshot", nvml.nvmlDeviceGetPowerUsage)
        limit_mw = self._call("snapshot", nvml.nvmlDeviceGetPowerManagementLimit)
        thermal_throttling, power_throttling = self._throttling()
        return TelemetrySnapshot(
            gpu_index=self._handle.index,
            temperature=self.temperature(),
            fan_speeds=fans,
            power_draw_watts=int(draw_mw) / 1000.0,
            power_limit_watts=int(limit_mw) // 1000,
            utilization=Utilization(gpu_percent=int(util.gpu), memory_percent=int(util.memory)),
            memory=MemoryUsage(used_bytes=int(mem.used), total_bytes=int(mem.total)),
            pcie=self._pcie(),
            ecc=self._ecc(),
            thermal_throttling=thermal_throttling,
            power_throttling=power_throttling,
            slowdown_temperature=self._threshold("snapshot",
                                                 "NVML_TEMPERATURE_THRESHOLD_SLOWDOWN"),
            timestamp=datetime.now(timezone.utc),
        )


class NvmlSession(Session):
    """
    Owns NVML initialisation for the lifetime of a `with` block.

    Usage:
        with NvmlSession() as session:
            device = session.open_selector("4090")
    """

    def __init__(self, nvml=pynvml):
        self._nvml = nvml
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    def initialize(self) -> None:
        try:
            self._nvml.nvmlInit()
        except self._nvml.NVMLError as exc:
            reason = _reason_map(self._nvml).get(getattr(exc, "value", None),
                                                 CapabilityReason.UNREACHABLE)
            raise CapabilityError(f"Failed to initialize NVML: {exc}", reason=reason,
                                  operation="init")
        self._initialized = True
        logging.debug("NVML initialized")

    def shutdown(self) -> None:
        if not self._initialized:
            return
        try:
            self._nvml.nvmlShutdown()
        except self._nvml.NVMLError as exc:
            logging.warning("Error during NVML shutdown: %s", exc)
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise CapabilityError("NVML not initialized", reason=CapabilityReason.UNREACHABLE)

    def list_handles(self) -> List[GpuHandle]:
        self._ensure_initialized()
        nvml = self._nvml
        handles = []
        try:
            for index in range(nvml.nvmlDeviceGetCount()):
                raw = nvml.nvmlDeviceGetHandleByIndex(index)
                handles.append(GpuHandle(index=index,
                                         name=_text(nvml.nvmlDeviceGetName(raw)),
                                         uuid=_text(nvml.nvmlDeviceGetUUID(raw))))
        except nvml.NVMLError as exc:
            reason = _reason_map(nvml).get(getattr(exc, "value", None), CapabilityReason.UNKNOWN)
            raise CapabilityError(f"Failed to enumerate GPUs: {exc}", reason=reason,
                                  operation="list_handles")
        return handles

    def open(self, handle: GpuHandle) -> NvmlDevice:
        self._ensure_initialized()
        try:
            raw = self._nvml.nvmlDeviceGetHandleByIndex(handle.index)
        except self._nvml.NVMLError:
            raise GpuNotFoundError(str(handle.index))
        return NvmlDevice(handle, raw, nvml=self._nvml)
