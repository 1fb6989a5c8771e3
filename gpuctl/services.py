#!/usr/bin/env python3
"""
Command pattern implementation for fan, power and thermal actions.

Each mutation is a Command: the value it carries has already passed domain
validation, and execute() either applies it through the device or, in dry-run
mode, reports what it would have done without touching any mutating call.
The services are thin per-device façades that build and run commands.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, List, Optional, Union

from .device import Device
from .domain import (FanCurve, FanPolicy, FanSpeedPercent, PowerLimitWatts, Temperature,
                     TemperatureLike)
from .errors import DomainValidationError
from .events import EventBus, event_bus


@dataclass(frozen=True)
class Applied:
    """The action reached the device."""
    action: str
    value: Any
    applied: ClassVar[bool] = True


@dataclass(frozen=True)
class DryRun:
    """The action was computed but deliberately not applied."""
    action: str
    value: Any
    applied: ClassVar[bool] = False


Outcome = Union[Applied, DryRun]


def speed_at(curve: FanCurve, temperature: TemperatureLike) -> FanSpeedPercent:
    """
    Look up the target fan speed for a temperature.

    Below the first point the curve's default speed applies; otherwise the
    speed of the highest point whose temperature is <= the reading.
    """
    return curve.speed_at(temperature)


class Command(ABC):
    """Base command interface for the Command pattern."""

    action: str = "command"

    def __init__(self, device: Device, dry_run: bool = False, bus: Optional[EventBus] = None):
        self.device = device
        self.dry_run = dry_run
        self.bus = bus or event_bus

    @property
    @abstractmethod
    def value(self) -> Any:
        """The validated value this command carries."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description of the action."""

    @abstractmethod
    def apply(self) -> None:
        """Issue the mutating calls."""

    def execute(self) -> Outcome:
        """Apply the command, or report it in dry-run mode."""
        if self.dry_run:
            logging.info("DRY RUN: would %s", self.describe())
            outcome = DryRun(self.action, self.value)
            self.bus.publish("action_dry_run", {"device": self.device.handle, "outcome": outcome})
            return outcome

        self.apply()
        logging.debug("%s: %s", self.device.handle, self.describe())
        outcome = Applied(self.action, self.value)
        self.bus.publish("action_applied", {"device": self.device.handle, "outcome": outcome})
        return outcome


class SetFanSpeedCommand(Command):
    """Set one fan, or every fan, to a fixed speed."""

    action = "set_fan_speed"

    def __init__(self, device: Device, speed: FanSpeedPercent, fan: Optional[int] = None,
                 dry_run: bool = False, bus: Optional[EventBus] = None):
        super().__init__(device, dry_run, bus)
        self.speed = speed
        self.fan = fan

    @property
    def value(self) -> FanSpeedPercent:
        return self.speed

    def describe(self) -> str:
        target = "all fans" if self.fan is None else f"fan {self.fan}"
        return f"set {target} on {self.device.handle} to {self.speed}"

    def apply(self) -> None:
        # Manual speeds are ignored while the driver owns the fans.
        if self.device.fan_policy() is not FanPolicy.MANUAL:
            logging.info("%s: switching fan policy to manual", self.device.handle)
            self.device.set_fan_policy(FanPolicy.MANUAL)
        fans: List[int] = ([self.fan] if self.fan is not None
                           else list(range(self.device.fan_count())))
        for index in fans:
            self.device.set_fan_speed(index, self.speed)


class SetFanPolicyCommand(Command):
    """Hand fan control to the driver or take it over."""

    action = "set_fan_policy"

    def __init__(self, device: Device, policy: FanPolicy, dry_run: bool = False,
                 bus: Optional[EventBus] = None):
        super().__init__(device, dry_run, bus)
        self.policy = policy

    @property
    def value(self) -> FanPolicy:
        return self.policy

    def describe(self) -> str:
        return f"set fan policy on {self.device.handle} to {self.policy}"

    def apply(self) -> None:
        self.device.set_fan_policy(self.policy)


class SetPowerLimitCommand(Command):
    """Change the power ceiling."""

    action = "set_power_limit"

    def __init__(self, device: Device, limit: PowerLimitWatts, dry_run: bool = False,
                 bus: Optional[EventBus] = None):
        super().__init__(device, dry_run, bus)
        self.limit = limit

    @property
    def value(self) -> PowerLimitWatts:
        return self.limit

    def describe(self) -> str:
        return f"set power limit on {self.device.handle} to {self.limit}"

    def apply(self) -> None:
        self.device.set_power_limit(self.limit)


class SetAcousticLimitCommand(Command):
    """Change the temperature the GPU throttles to hold."""

    action = "set_acoustic_limit"

    def __init__(self, device: Device, temperature: Temperature, dry_run: bool = False,
                 bus: Optional[EventBus] = None):
        super().__init__(device, dry_run, bus)
        self.temperature = temperature

    @property
    def value(self) -> Temperature:
        return self.temperature

    def describe(self) -> str:
        return f"set acoustic limit on {self.device.handle} to {self.temperature}"

    def apply(self) -> None:
        self.device.set_acoustic_limit(self.temperature)


###############################################################################
# Services
###############################################################################

class FanService:
    """Fan speed and policy control for one device."""

    def __init__(self, device: Device, dry_run: bool = False, bus: Optional[EventBus] = None):
        self.device = device
        self.dry_run = dry_run
        self.bus = bus

    def set_speed(self, speed: Union[int, FanSpeedPercent], fan: Optional[int] = None) -> Outcome:
        """
        Set a fixed fan speed.

        Args:
            speed: Target speed; plain integers are validated first
            fan: Fan index, or None for every fan

        Returns:
            Applied or DryRun carrying the speed
        """
        if not isinstance(speed, FanSpeedPercent):
            speed = FanSpeedPercent(speed)
        return SetFanSpeedCommand(self.device, speed, fan, self.dry_run, self.bus).execute()

    def apply_curve(self, curve: FanCurve,
                    temperature: Optional[TemperatureLike] = None) -> Outcome:
        """Set every fan to the curve's speed for a temperature (read live if omitted)."""
        if temperature is None:
            temperature = self.device.temperature()
        return self.set_speed(speed_at(curve, temperature))

    def set_policy(self, policy: FanPolicy) -> Outcome:
        return SetFanPolicyCommand(self.device, policy, self.dry_run, self.bus).execute()

    def restore_auto(self) -> Outcome:
        """Give fan control back to the driver."""
        return self.set_policy(FanPolicy.AUTO)


class PowerService:
    """Power ceiling control for one device."""

    def __init__(self, device: Device, dry_run: bool = False, bus: Optional[EventBus] = None):
        self.device = device
        self.dry_run = dry_run
        self.bus = bus

    def limit_for(self, watts: int) -> PowerLimitWatts:
        """Validate watts against this device's constraints."""
        return PowerLimitWatts(watts, self.device.power_constraints())

    def set_limit(self, limit: Union[int, PowerLimitWatts]) -> Outcome:
        if not isinstance(limit, PowerLimitWatts):
            limit = self.limit_for(limit)
        return SetPowerLimitCommand(self.device, limit, self.dry_run, self.bus).execute()

    def reset_limit(self) -> Outcome:
        """Return to the board's default power limit."""
        constraints = self.device.power_constraints()
        return self.set_limit(PowerLimitWatts(constraints.default_watts, constraints))


class ThermalService:
    """Acoustic (throttle) temperature target for one device."""

    def __init__(self, device: Device, dry_run: bool = False, bus: Optional[EventBus] = None):
        self.device = device
        self.dry_run = dry_run
        self.bus = bus

    def set_acoustic_limit(self, celsius: TemperatureLike) -> Outcome:
        temperature = celsius if isinstance(celsius, Temperature) else Temperature(celsius)
        limits = self.device.acoustic_limits()
        if not limits.accepts(temperature):
            raise DomainValidationError(
                f"Acoustic limit {temperature} outside supported range "
                f"{limits.min or '?'}-{limits.max or '?'}")
        return SetAcousticLimitCommand(self.device, temperature, self.dry_run, self.bus).execute()
