#!/usr/bin/env python3
"""
Device capability interface.

A Device is everything the control engine may ask of one GPU. There are two
implementations, NvmlDevice (real hardware) and MockDevice (in memory), and
the caller always injects the one it wants.

A device owns its hardware handle exclusively. Nothing here locks: only one
execution context (the daemon, or a one-shot command) may drive a handle at a
time, and a GUI poller opens its own session.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Sequence, Union

from .domain import (AcousticLimits, FanPolicy, FanSpeedPercent, PowerConstraints,
                     PowerLimitWatts, Temperature, TelemetrySnapshot)
from .errors import GpuNotFoundError


@dataclass(frozen=True)
class GpuHandle:
    """Identifies one GPU for the lifetime of a single process."""
    index: int
    name: str
    uuid: str

    def __str__(self) -> str:
        return f"GPU {self.index} ({self.name})"


class Device(ABC):
    """Read and mutate operations exposed by one GPU."""

    @property
    @abstractmethod
    def handle(self) -> GpuHandle:
        """The GPU this device talks to."""

    @abstractmethod
    def temperature(self) -> Temperature:
        """Current core temperature."""

    @abstractmethod
    def fan_count(self) -> int:
        """Number of controllable fans."""

    @abstractmethod
    def fan_speed(self, index: int) -> FanSpeedPercent:
        """Current speed of one fan."""

    @abstractmethod
    def set_fan_speed(self, index: int, speed: FanSpeedPercent) -> None:
        """Set one fan. Only honoured while the policy is MANUAL."""

    @abstractmethod
    def fan_policy(self) -> FanPolicy:
        """Current fan control policy."""

    @abstractmethod
    def set_fan_policy(self, policy: FanPolicy) -> None:
        """Hand fan control to the driver (AUTO) or to us (MANUAL)."""

    @abstractmethod
    def power_limit(self) -> PowerLimitWatts:
        """Active power ceiling."""

    @abstractmethod
    def set_power_limit(self, limit: PowerLimitWatts) -> None:
        """Change the power ceiling."""

    @abstractmethod
    def power_constraints(self) -> PowerConstraints:
        """Range of power limits the device accepts."""

    @abstractmethod
    def acoustic_limits(self) -> AcousticLimits:
        """Range of acoustic temperature targets the device accepts."""

    @abstractmethod
    def set_acoustic_limit(self, temperature: Temperature) -> None:
        """Throttle performance to hold the GPU at or below temperature."""

    @abstractmethod
    def snapshot(self) -> TelemetrySnapshot:
        """A fresh read of every telemetry field."""


class Session(ABC):
    """Enumerates GPUs and opens devices on them."""

    @abstractmethod
    def list_handles(self) -> List[GpuHandle]:
        """All GPUs visible to this session, in index order."""

    @abstractmethod
    def open(self, handle: GpuHandle) -> Device:
        """Open a device for a previously resolved handle."""

    def open_selector(self, selector: Union[int, str]) -> Device:
        """Resolve a selector and open the matching device."""
        return self.open(resolve_handle(selector, self.list_handles()))


def resolve_handle(selector: Union[int, str], handles: Sequence[GpuHandle]) -> GpuHandle:
    """
    Find the GPU a user meant.

    Resolution order:
    1. an int, or an all-digit string naming an existing index
    2. an exact UUID (case-insensitive)
    3. the first GPU, by index, whose name contains the selector (case-insensitive)

    Several name matches are not an error: the lowest index wins, so the
    same selector always picks the same GPU on the same machine.

    Raises:
        GpuNotFoundError: if nothing matches
    """
    ordered = sorted(handles, key=lambda h: h.index)

    if isinstance(selector, int) and not isinstance(selector, bool):
        for handle in ordered:
            if handle.index == selector:
                return handle
        raise GpuNotFoundError(str(selector))

    text = str(selector).strip()
    if not text:
        raise GpuNotFoundError(text)

    if text.isdigit():
        for handle in ordered:
            if handle.index == int(text):
                return handle

    lowered = text.lower()
    for handle in ordered:
        if handle.uuid.lower() == lowered:
            return handle

    for handle in ordered:
        if lowered in handle.name.lower():
            return handle

    raise GpuNotFoundError(text)
