#!/usr/bin/env python3
"""
Domain value types.

Every type validates on construction, so a value that exists is a value the
hardware layer may be handed. Telemetry snapshot types live here too: they are
plain immutable records with no reference back to the device that produced
them.
"""

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

from .errors import DomainValidationError


def _require_int(value, what: str) -> int:
    # bool is an int subclass; True°C is not a temperature.
    if isinstance(value, bool) or not isinstance(value, int):
        raise DomainValidationError(f"{what} must be an integer, got {value!r}")
    return value


@dataclass(frozen=True, order=True)
class Temperature:
    """A temperature reading in whole degrees Celsius."""
    celsius: int

    def __post_init__(self):
        _require_int(self.celsius, "Temperature")

    def __str__(self) -> str:
        return f"{self.celsius}°C"


@dataclass(frozen=True, order=True)
class FanSpeedPercent:
    """Fan duty as a percentage, 0-100 inclusive."""
    value: int

    MIN = 0
    MAX = 100

    def __post_init__(self):
        _require_int(self.value, "Fan speed")
        if not self.MIN <= self.value <= self.MAX:
            raise DomainValidationError(
                f"Invalid fan speed: {self.value}% (must be {self.MIN}-{self.MAX})")

    @property
    def fraction(self) -> float:
        return self.value / 100.0

    def __str__(self) -> str:
        return f"{self.value}%"


@dataclass(frozen=True)
class PowerConstraints:
    """Power limit range reported by a device, in watts."""
    min_watts: int
    max_watts: int
    default_watts: int

    def __post_init__(self):
        for name in ("min_watts", "max_watts", "default_watts"):
            _require_int(getattr(self, name), name)
        if self.min_watts > self.max_watts:
            raise DomainValidationError(
                f"Power constraints inverted: min {self.min_watts}W > max {self.max_watts}W")
        if not self.contains(self.default_watts):
            raise DomainValidationError(
                f"Default power limit {self.default_watts}W outside "
                f"{self.min_watts}-{self.max_watts}W")

    def contains(self, watts: int) -> bool:
        return self.min_watts <= watts <= self.max_watts

    def __str__(self) -> str:
        return f"{self.min_watts}-{self.max_watts}W (default: {self.default_watts}W)"


@dataclass(frozen=True, order=True)
class PowerLimitWatts:
    """A power ceiling that lies inside the constraints of one device."""
    watts: int
    constraints: PowerConstraints = field(compare=False, repr=False)

    def __post_init__(self):
        _require_int(self.watts, "Power limit")
        if not self.constraints.contains(self.watts):
            raise DomainValidationError(
                f"Invalid power limit: {self.watts}W (valid range: "
                f"{self.constraints.min_watts}-{self.constraints.max_watts}W)")

    @property
    def milliwatts(self) -> int:
        return self.watts * 1000

    def __str__(self) -> str:
        return f"{self.watts}W"


TemperatureLike = Union[Temperature, int]


def as_celsius(temperature: TemperatureLike) -> int:
    """Accept either a Temperature or a raw integer reading."""
    if isinstance(temperature, Temperature):
        return temperature.celsius
    return Temperature(temperature).celsius


@dataclass(frozen=True)
class FanCurvePoint:
    """A single step of a fan curve."""
    temperature: Temperature
    speed: FanSpeedPercent


@dataclass(frozen=True)
class FanCurve:
    """
    Step-wise temperature → fan speed mapping.

    Points must be strictly increasing by temperature. Below the first point
    the curve answers with default_speed; at or above a point it answers with
    that point's speed until the next point is reached.
    """
    points: Tuple[FanCurvePoint, ...]
    default_speed: FanSpeedPercent

    def __post_init__(self):
        points = tuple(self.points)
        if not points:
            raise DomainValidationError("Fan curve must have at least one point")
        temps = [p.temperature.celsius for p in points]
        for lower, upper in zip(temps, temps[1:]):
            if lower == upper:
                raise DomainValidationError(f"Duplicate fan curve temperature: {lower}°C")
            if lower > upper:
                raise DomainValidationError(
                    "Fan curve points must be sorted by ascending temperature")
        object.__setattr__(self, "points", points)

    def speed_at(self, temperature: TemperatureLike) -> FanSpeedPercent:
        """Return the target speed for a temperature (no interpolation)."""
        celsius = as_celsius(temperature)
        temps = [p.temperature.celsius for p in self.points]
        pos = bisect_right(temps, celsius)
        if pos == 0:
            return self.default_speed
        return self.points[pos - 1].speed

    @classmethod
    def parse(cls, points: Iterable[Union[str, Sequence[int]]],
              default_speed: int) -> "FanCurve":
        """
        Build a curve from "TEMP:SPEED" strings or (temp, speed) pairs.

        Raises:
            DomainValidationError: on malformed pairs or invalid values
        """
        parsed = []
        for raw in points:
            if isinstance(raw, str):
                parts = raw.split(":")
                if len(parts) != 2:
                    raise DomainValidationError(
                        f"Invalid speed pair format: '{raw}'. Expected TEMP:SPEED (e.g., 60:50)")
                try:
                    temp, speed = int(parts[0]), int(parts[1])
                except ValueError:
                    raise DomainValidationError(f"Invalid speed pair '{raw}': not a number")
            else:
                try:
                    temp, speed = raw
                except (TypeError, ValueError):
                    raise DomainValidationError(f"Invalid fan curve point: {raw!r}")
            parsed.append(FanCurvePoint(Temperature(temp), FanSpeedPercent(speed)))
        return cls(tuple(parsed), FanSpeedPercent(default_speed))

    @classmethod
    def default_curve(cls) -> "FanCurve":
        return cls.parse(["40:30", "60:50", "75:80", "85:100"], default_speed=30)

    def __str__(self) -> str:
        steps = " ".join(f"{p.temperature.celsius}:{p.speed.value}" for p in self.points)
        return f"{steps} (default {self.default_speed})"


class FanPolicy(Enum):
    """Who decides the fan speed: the driver or us."""
    AUTO = "auto"
    MANUAL = "manual"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AcousticLimits:
    """Range of acoustic (throttle) temperature targets a device accepts."""
    min: Optional[Temperature]
    current: Optional[Temperature]
    max: Optional[Temperature]

    def accepts(self, temperature: Temperature) -> bool:
        if self.min is not None and temperature < self.min:
            return False
        if self.max is not None and temperature > self.max:
            return False
        return True


###############################################################################
# Telemetry
###############################################################################

@dataclass(frozen=True)
class Utilization:
    gpu_percent: int
    memory_percent: int


@dataclass(frozen=True)
class MemoryUsage:
    used_bytes: int
    total_bytes: int

    @property
    def used_ratio(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes


@dataclass(frozen=True)
class PcieLink:
    current_generation: int
    max_generation: int
    current_width: int
    max_width: int
    replay_count: int = 0

    @property
    def bandwidth_efficiency(self) -> float:
        """Current link bandwidth as a percentage of what the link supports."""
        possible = self.max_generation * self.max_width
        if possible <= 0:
            return 100.0
        return 100.0 * (self.current_generation * self.current_width) / possible


@dataclass(frozen=True)
class EccCounters:
    """Volatile ECC error counts since the driver loaded."""
    correctable: int
    uncorrectable: int


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Point-in-time read of every telemetry field of one GPU."""
    gpu_index: int
    temperature: Temperature
    fan_speeds: Tuple[FanSpeedPercent, ...]
    power_draw_watts: float
    power_limit_watts: int
    utilization: Utilization
    memory: MemoryUsage
    pcie: Optional[PcieLink] = None
    ecc: Optional[EccCounters] = None
    thermal_throttling: bool = False
    power_throttling: bool = False
    slowdown_temperature: Optional[Temperature] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "fan_speeds", tuple(self.fan_speeds))

    @property
    def power_ratio(self) -> float:
        """Power draw as a fraction of the active limit."""
        return self.power_draw_watts / max(self.power_limit_watts, 1)

    @property
    def max_fan_speed(self) -> Optional[FanSpeedPercent]:
        return max(self.fan_speeds) if self.fan_speeds else None
