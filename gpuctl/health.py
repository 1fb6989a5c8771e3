#!/usr/bin/env python3
"""
GPU health scoring.

Turns one TelemetrySnapshot into a 0-100 score. Each dimension (thermal,
power, memory/ECC, PCIe) gets its own sub-score from a fixed penalty function;
the overall score is a weighted minimum, so a single failing dimension drags
the whole GPU down instead of being averaged away by healthy ones.

Every penalty function is non-increasing in the metric it penalises.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .domain import TelemetrySnapshot

# Generic thermal steps used when the board does not report a slowdown threshold
GENERIC_THERMAL_STEPS: Tuple[Tuple[int, int], ...] = ((90, 10), (85, 40), (80, 70), (70, 90))
SLOWDOWN_BAND = 10                  # °C below slowdown where the score ramps to 0
ECC_CORRECTABLE_HIGH = 100          # volatile correctable errors considered a trend
POWER_STEPS: Tuple[Tuple[float, int], ...] = ((0.98, 50), (0.90, 75), (0.80, 90))
PCIE_REPLAY_STEPS: Tuple[Tuple[int, int], ...] = ((1000, 30), (100, 15), (0, 5))

DEFAULT_WEIGHTS: Dict[str, float] = {
    "thermal": 1.0,
    "memory": 1.0,
    "power": 0.8,
    "pcie": 0.6,
}


class HealthStatus(Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    CRITICAL = "Critical"

    @classmethod
    def for_score(cls, score: int) -> "HealthStatus":
        if score >= 90:
            return cls.EXCELLENT
        if score >= 75:
            return cls.GOOD
        if score >= 50:
            return cls.FAIR
        if score >= 25:
            return cls.POOR
        return cls.CRITICAL


class IssueSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class HealthIssue:
    severity: IssueSeverity
    category: str
    description: str
    recommendation: Optional[str] = None


@dataclass(frozen=True)
class HealthScore:
    """Composite score plus the sub-scores it was derived from."""
    score: int
    thermal: int
    power: int
    memory: int
    pcie: int
    issues: Tuple[HealthIssue, ...] = field(default=())

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.for_score(self.score)

    @property
    def dimensions(self) -> Dict[str, int]:
        return {"thermal": self.thermal, "power": self.power,
                "memory": self.memory, "pcie": self.pcie}

    def __str__(self) -> str:
        return f"{self.score}/100 ({self.status.value})"


def _clamp(score: float) -> int:
    return max(0, min(100, int(round(score))))


def thermal_score(snapshot: TelemetrySnapshot) -> int:
    celsius = snapshot.temperature.celsius
    score = 100
    if snapshot.slowdown_temperature is not None:
        slowdown = snapshot.slowdown_temperature.celsius
        if celsius >= slowdown:
            score = 0
        elif celsius >= slowdown - SLOWDOWN_BAND:
            score = int(50 * (slowdown - celsius) / SLOWDOWN_BAND)
        elif celsius >= 80:
            score = 75
        elif celsius >= 70:
            score = 90
    else:
        for threshold, value in GENERIC_THERMAL_STEPS:
            if celsius >= threshold:
                score = value
                break

    if snapshot.thermal_throttling:
        score -= 30
    if snapshot.power_throttling:
        score -= 10
    return _clamp(score)


def power_score(snapshot: TelemetrySnapshot) -> int:
    ratio = snapshot.power_ratio
    score = 100
    for threshold, value in POWER_STEPS:
        if ratio >= threshold:
            score = value
            break
    if snapshot.power_throttling:
        score -= 40
    return _clamp(score)


def memory_score(snapshot: TelemetrySnapshot) -> int:
    score = 100
    ecc = snapshot.ecc
    if ecc is not None:
        if ecc.uncorrectable > 0:
            score = 0
        elif ecc.correctable >= ECC_CORRECTABLE_HIGH:
            score = 40
        elif ecc.correctable > 0:
            score = 85

    used = snapshot.memory.used_ratio
    if used >= 0.95:
        score -= 20
    elif used >= 0.85:
        score -= 10
    return _clamp(score)


def pcie_score(snapshot: TelemetrySnapshot) -> int:
    link = snapshot.pcie
    if link is None:
        return 100

    efficiency = link.bandwidth_efficiency
    if efficiency < 50.0:
        score = 60
    elif efficiency < 75.0:
        score = 85
    else:
        score = 100

    for threshold, penalty in PCIE_REPLAY_STEPS:
        if link.replay_count > threshold:
            score -= penalty
            break
    return _clamp(score)


def _issues(snapshot: TelemetrySnapshot) -> List[HealthIssue]:
    issues = []
    celsius = snapshot.temperature.celsius

    if snapshot.thermal_throttling:
        issues.append(HealthIssue(
            IssueSeverity.CRITICAL, "thermal", f"GPU is thermal throttling at {celsius}°C",
            "Improve cooling: clean dust filters, increase fan speed, or improve case airflow"))
    elif celsius >= 85:
        issues.append(HealthIssue(
            IssueSeverity.WARNING, "thermal", f"High temperature: {celsius}°C",
            "Consider increasing fan speed or improving cooling"))

    if snapshot.power_throttling:
        issues.append(HealthIssue(
            IssueSeverity.CRITICAL, "power", "GPU is power throttling",
            "Increase power limit or reduce workload intensity"))
    elif snapshot.power_ratio >= 0.95:
        issues.append(HealthIssue(
            IssueSeverity.WARNING, "power",
            f"Power usage near limit: {snapshot.power_ratio * 100:.0f}%",
            "Consider increasing power limit if thermal headroom allows"))

    ecc = snapshot.ecc
    if ecc is not None and ecc.uncorrectable > 0:
        issues.append(HealthIssue(
            IssueSeverity.CRITICAL, "memory",
            f"Uncorrectable ECC errors detected: {ecc.uncorrectable}",
            "Uncorrectable memory errors indicate hardware failure; consider replacement"))
    elif ecc is not None and ecc.correctable >= ECC_CORRECTABLE_HIGH:
        issues.append(HealthIssue(
            IssueSeverity.WARNING, "memory",
            f"High correctable ECC error count: {ecc.correctable}",
            "Monitor ECC errors; sustained growth may indicate degrading memory"))

    if snapshot.memory.used_ratio >= 0.95:
        issues.append(HealthIssue(
            IssueSeverity.WARNING, "memory",
            f"VRAM usage very high: {snapshot.memory.used_ratio * 100:.0f}%",
            "Reduce VRAM usage or close unnecessary applications"))

    link = snapshot.pcie
    if link is not None:
        if link.bandwidth_efficiency < 50.0:
            issues.append(HealthIssue(
                IssueSeverity.WARNING, "pcie",
                f"PCIe link running at reduced capability: Gen{link.current_generation} "
                f"x{link.current_width} (max Gen{link.max_generation} x{link.max_width})",
                "Check PCIe slot configuration"))
        if link.replay_count > 100:
            issues.append(HealthIssue(
                IssueSeverity.WARNING, "pcie",
                f"PCIe link errors detected: {link.replay_count} replays",
                "Check PCIe power cables and slot connection"))
    return issues


class HealthScorer:
    """
    Scores snapshots with a fixed set of dimension weights.

    A weight scales how far a dimension's deficit can pull the overall score:
    with weight 1.0 a dimension at 0 forces the overall score to 0.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self.weights.update(weights)
        for name, weight in self.weights.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"Weight for {name} must be within [0, 1], got {weight}")

    def score(self, snapshot: TelemetrySnapshot) -> HealthScore:
        subs = {
            "thermal": thermal_score(snapshot),
            "power": power_score(snapshot),
            "memory": memory_score(snapshot),
            "pcie": pcie_score(snapshot),
        }
        overall = min(100 - self.weights[name] * (100 - value) for name, value in subs.items())
        return HealthScore(score=_clamp(overall), issues=tuple(_issues(snapshot)), **subs)


_default_scorer = HealthScorer()


def score_snapshot(snapshot: TelemetrySnapshot) -> HealthScore:
    """Score a snapshot with the default weights."""
    return _default_scorer.score(snapshot)
