#!/usr/bin/env python3
"""
In-memory device provider.

MockDevice behaves like a GPU that obeys the same contract as NvmlDevice, and
can be told to fail specific calls so every failure path of the services and
the daemon can be exercised without hardware.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from .device import Device, GpuHandle, Session
from .domain import (AcousticLimits, EccCounters, FanPolicy, FanSpeedPercent, MemoryUsage,
                     PcieLink, PowerConstraints, PowerLimitWatts, Temperature,
                     TelemetrySnapshot, Utilization)
from .errors import CapabilityError, CapabilityReason, GpuNotFoundError


class _Failure:
    """A programmed failure: raise `error` for the next `remaining` calls (None = forever)."""

    def __init__(self, error: CapabilityError, remaining: Optional[int]):
        self.error = error
        self.remaining = remaining

    def trigger(self) -> bool:
        if self.remaining is None:
            return True
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


class MockDevice(Device):
    """
    Programmable in-memory GPU.

    Every mutating call is appended to `calls` as (operation, args) so tests
    can assert on what reached the "hardware". Temperatures fed through
    feed_temperatures() are consumed one per snapshot().
    """

    def __init__(self, index: int = 0, name: Optional[str] = None, uuid: Optional[str] = None,
                 fan_count: int = 2, temperature: int = 45,
                 power_constraints: Optional[PowerConstraints] = None,
                 power_draw_watts: float = 150.0,
                 acoustic_limits: Optional[AcousticLimits] = None,
                 ecc: Optional[EccCounters] = None,
                 pcie: Optional[PcieLink] = None):
        self._handle = GpuHandle(index=index,
                                 name=name or f"Mock GPU {index}",
                                 uuid=uuid or f"GPU-MOCK-{index:04d}")
        self._fan_count = fan_count
        self._temperature = Temperature(temperature)
        self._temperatures: Deque[int] = deque()
        self._fan_speeds: Dict[int, FanSpeedPercent] = {
            i: FanSpeedPercent(50) for i in range(fan_count)
        }
        self._policy = FanPolicy.AUTO
        self._constraints = power_constraints or PowerConstraints(100, 400, 300)
        self._power_limit = PowerLimitWatts(self._constraints.default_watts, self._constraints)
        self._power_draw = power_draw_watts
        self._acoustic = acoustic_limits or AcousticLimits(
            min=Temperature(60), current=Temperature(80), max=Temperature(90))
        self._ecc = ecc
        self._pcie = pcie or PcieLink(current_generation=4, max_generation=4,
                                      current_width=16, max_width=16)
        self._failures: Dict[str, _Failure] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.snapshot_count = 0

    # ------------------------------------------------------------------
    # Programming the double
    # ------------------------------------------------------------------

    def fail(self, operation: str, times: Optional[int] = 1,
             reason: CapabilityReason = CapabilityReason.UNREACHABLE,
             message: str = "simulated failure") -> None:
        """
        Make the next `times` calls to `operation` raise CapabilityError.

        Args:
            operation: Device method name, e.g. "snapshot" or "set_fan_speed"
            times: Number of failing calls, or None to fail until cleared
            reason: CapabilityReason carried by the raised error
            message: Error message
        """
        error = CapabilityError(message, reason=reason, device=str(self._handle),
                                operation=operation)
        self._failures[operation] = _Failure(error, times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def feed_temperatures(self, temperatures: Iterable[int]) -> None:
        """Queue temperatures returned by successive snapshot() calls."""
        self._temperatures.extend(temperatures)

    def set_temperature(self, celsius: int) -> None:
        self._temperature = Temperature(celsius)

    def set_power_draw(self, watts: float) -> None:
        self._power_draw = watts

    def set_ecc(self, ecc: Optional[EccCounters]) -> None:
        self._ecc = ecc

    def mutations(self, operation: str) -> List[tuple]:
        """Arguments of every recorded call to one mutating operation."""
        return [args for op, args in self.calls if op == operation]

    def _check(self, operation: str) -> None:
        failure = self._failures.get(operation)
        if failure is not None and failure.trigger():
            raise failure.error

    def _reject(self, operation: str, message: str,
                reason: CapabilityReason = CapabilityReason.CONSTRAINT) -> CapabilityError:
        return CapabilityError(message, reason=reason, device=str(self._handle),
                               operation=operation)

    def _check_fan_index(self, operation: str, index: int) -> None:
        if not 0 <= index < self._fan_count:
            raise self._reject(operation, f"Fan {index} not found (count: {self._fan_count})")

    # ------------------------------------------------------------------
    # Device
    # ------------------------------------------------------------------

    @property
    def handle(self) -> GpuHandle:
        return self._handle

    def temperature(self) -> Temperature:
        self._check("temperature")
        return self._temperature

    def fan_count(self) -> int:
        self._check("fan_count")
        return self._fan_count

    def fan_speed(self, index: int) -> FanSpeedPercent:
        self._check("fan_speed")
        self._check_fan_index("fan_speed", index)
        return self._fan_speeds[index]

    def set_fan_speed(self, index: int, speed: FanSpeedPercent) -> None:
        self._check("set_fan_speed")
        self._check_fan_index("set_fan_speed", index)
        if self._policy is not FanPolicy.MANUAL:
            raise self._reject("set_fan_speed", "fan control policy is auto",
                               reason=CapabilityReason.UNSUPPORTED)
        self._fan_speeds[index] = speed
        self.calls.append(("set_fan_speed", (index, speed)))

    def fan_policy(self) -> FanPolicy:
        self._check("fan_policy")
        return self._policy

    def set_fan_policy(self, policy: FanPolicy) -> None:
        self._check("set_fan_policy")
        self._policy = policy
        self.calls.append(("set_fan_policy", (policy,)))

    def power_limit(self) -> PowerLimitWatts:
        self._check("power_limit")
        return self._power_limit

    def set_power_limit(self, limit: PowerLimitWatts) -> None:
        self._check("set_power_limit")
        if not self._constraints.contains(limit.watts):
            raise self._reject("set_power_limit",
                               f"{limit} outside device range {self._constraints}")
        self._power_limit = PowerLimitWatts(limit.watts, self._constraints)
        self.calls.append(("set_power_limit", (limit,)))

    def power_constraints(self) -> PowerConstraints:
        self._check("power_constraints")
        return self._constraints

    def acoustic_limits(self) -> AcousticLimits:
        self._check("acoustic_limits")
        return self._acoustic

    def set_acoustic_limit(self, temperature: Temperature) -> None:
        self._check("set_acoustic_limit")
        if not self._acoustic.accepts(temperature):
            raise self._reject("set_acoustic_limit", f"{temperature} outside acoustic range")
        self._acoustic = AcousticLimits(min=self._acoustic.min, current=temperature,
                                        max=self._acoustic.max)
        self.calls.append(("set_acoustic_limit", (temperature,)))

    def snapshot(self) -> TelemetrySnapshot:
        self._check("snapshot")
        if self._temperatures:
            self._temperature = Temperature(self._temperatures.popleft())
        self.snapshot_count += 1
        return TelemetrySnapshot(
            gpu_index=self._handle.index,
            temperature=self._temperature,
            fan_speeds=tuple(self._fan_speeds[i] for i in range(self._fan_count)),
            power_draw_watts=self._power_draw,
            power_limit_watts=self._power_limit.watts,
            utilization=Utilization(gpu_percent=40, memory_percent=20),
            memory=MemoryUsage(used_bytes=4 * 1024 ** 3, total_bytes=24 * 1024 ** 3),
            pcie=self._pcie,
            ecc=self._ecc,
            slowdown_temperature=Temperature(95),
            timestamp=datetime.now(timezone.utc),
        )


class MockSession(Session):
    """A fixed set of mock devices, enumerable like a real NVML session."""

    def __init__(self, devices: Sequence[MockDevice]):
        self._devices = {device.handle.index: device for device in devices}

    @classmethod
    def with_names(cls, names: Sequence[str]) -> "MockSession":
        return cls([MockDevice(index=i, name=name) for i, name in enumerate(names)])

    def list_handles(self) -> List[GpuHandle]:
        return [self._devices[i].handle for i in sorted(self._devices)]

    def open(self, handle: GpuHandle) -> MockDevice:
        try:
            return self._devices[handle.index]
        except KeyError:
            raise GpuNotFoundError(str(handle.index))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False
