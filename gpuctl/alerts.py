#!/usr/bin/env python3
"""
Threshold alerting over the telemetry stream.

Each rule is an independent edge-triggered state machine: it raises when its
predicate becomes true and clears when it becomes false again. Every raise
creates a new AlertInstance and the engine keeps them all, cleared or not, for
the lifetime of the process.
"""

import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .domain import TelemetrySnapshot
from .errors import ConfigurationError
from .events import EventBus, event_bus
from .health import HealthScorer

EQUALS_EPSILON = 1e-3


class Metric(Enum):
    TEMPERATURE = "temperature"
    FAN_SPEED = "fan_speed"
    POWER_USAGE = "power_usage"
    POWER_PERCENT = "power_percent"
    GPU_UTILIZATION = "gpu_utilization"
    MEMORY_UTILIZATION = "memory_utilization"
    VRAM_PERCENT = "vram_percent"
    ECC_CORRECTABLE = "ecc_correctable_errors"
    ECC_UNCORRECTABLE = "ecc_uncorrectable_errors"
    PCIE_REPLAY = "pcie_replay_counter"
    HEALTH_SCORE = "health_score"


class Comparison(Enum):
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    EQ = "=="

    def holds(self, value: float, threshold: float) -> bool:
        if self is Comparison.EQ:
            return abs(value - threshold) < EQUALS_EPSILON
        return _OPERATORS[self](value, threshold)


_OPERATORS: Dict[Comparison, Callable[[float, float], bool]] = {
    Comparison.GT: operator.gt,
    Comparison.GE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LE: operator.le,
}


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class AlertState(Enum):
    ACTIVE = "active"
    CLEARED = "cleared"


@dataclass(frozen=True)
class AlertRule:
    name: str
    metric: Metric
    comparison: Comparison
    threshold: float
    severity: Severity = Severity.WARNING
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> "AlertRule":
        """
        Build a rule from its configuration mapping.

        Args:
            data: Mapping with name, metric, comparison, threshold and
                optionally severity and enabled

        Raises:
            ConfigurationError: on a missing key or an unknown enum value
        """
        try:
            threshold = data["threshold"]
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
                raise ConfigurationError(
                    f"Alert rule {data.get('name')!r}: threshold must be a number")
            enabled = data.get("enabled", True)
            if not isinstance(enabled, bool):
                raise ConfigurationError(
                    f"Alert rule {data.get('name')!r}: enabled must be true or false")
            return cls(
                name=str(data["name"]),
                metric=Metric(data["metric"]),
                comparison=Comparison(data["comparison"]),
                threshold=float(threshold),
                severity=Severity(data.get("severity", "warning")),
                enabled=enabled,
            )
        except KeyError as e:
            raise ConfigurationError(f"Alert rule is missing {e.args[0]!r}: {data!r}")
        except ValueError as e:
            raise ConfigurationError(f"Invalid alert rule {data.get('name')!r}: {e}")

    def __str__(self) -> str:
        return f"{self.name} ({self.metric.value} {self.comparison.value} {self.threshold:g})"


@dataclass
class AlertInstance:
    """One raise of a rule, and its clear once that happens."""
    rule: AlertRule
    raised_at: datetime
    raised_value: float
    state: AlertState = AlertState.ACTIVE
    cleared_at: Optional[datetime] = None
    cleared_value: Optional[float] = None
    acknowledged: bool = False
    # Silenced instances still raise and clear but are not notified.
    silenced: bool = False

    @property
    def active(self) -> bool:
        return self.state is AlertState.ACTIVE


@dataclass(frozen=True)
class AlertTransition:
    """Published whenever a rule raises or clears."""
    instance: AlertInstance
    state: AlertState
    value: float
    gpu_index: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def raised(self) -> bool:
        return self.state is AlertState.ACTIVE


def metric_value(metric: Metric, snapshot: TelemetrySnapshot,
                 scorer: Optional[HealthScorer] = None) -> Optional[float]:
    """
    Extract one metric from a snapshot.

    Returns:
        The value, or None when the snapshot does not carry it (no ECC on the
        board, no PCIe info, no fans)
    """
    if metric is Metric.TEMPERATURE:
        return float(snapshot.temperature.celsius)
    if metric is Metric.FAN_SPEED:
        fastest = snapshot.max_fan_speed
        return float(fastest.value) if fastest is not None else None
    if metric is Metric.POWER_USAGE:
        return float(snapshot.power_draw_watts)
    if metric is Metric.POWER_PERCENT:
        return snapshot.power_ratio * 100.0
    if metric is Metric.GPU_UTILIZATION:
        return float(snapshot.utilization.gpu_percent)
    if metric is Metric.MEMORY_UTILIZATION:
        return float(snapshot.utilization.memory_percent)
    if metric is Metric.VRAM_PERCENT:
        if snapshot.memory.total_bytes <= 0:
            return None
        return snapshot.memory.used_ratio * 100.0
    if metric is Metric.ECC_CORRECTABLE:
        return float(snapshot.ecc.correctable) if snapshot.ecc is not None else None
    if metric is Metric.ECC_UNCORRECTABLE:
        return float(snapshot.ecc.uncorrectable) if snapshot.ecc is not None else None
    if metric is Metric.PCIE_REPLAY:
        return float(snapshot.pcie.replay_count) if snapshot.pcie is not None else None
    if metric is Metric.HEALTH_SCORE:
        return float((scorer or HealthScorer()).score(snapshot).score)
    raise ValueError(f"Unknown metric: {metric}")


class AlertEngine:
    """
    Evaluates a fixed rule set against each snapshot.

    Evaluation is synchronous and single-threaded; call it from the thread
    that polls the device.
    """

    def __init__(self, rules: Sequence[AlertRule], bus: Optional[EventBus] = None,
                 scorer: Optional[HealthScorer] = None):
        names = [rule.name for rule in rules]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate alert rule names: {', '.join(duplicates)}")

        self.rules: List[AlertRule] = list(rules)
        self.bus = bus or event_bus
        self.scorer = scorer or HealthScorer()
        self._active: Dict[str, AlertInstance] = {}
        self._history: List[AlertInstance] = []

    def evaluate(self, snapshot: TelemetrySnapshot) -> List[AlertTransition]:
        """
        Run every rule against one snapshot.

        Args:
            snapshot: Fresh telemetry

        Returns:
            Raises and clears caused by this snapshot, in rule order
        """
        transitions = []
        for rule in self.rules:
            if not rule.enabled:
                continue
            value = metric_value(rule.metric, snapshot, self.scorer)
            if value is None:
                continue

            firing = rule.comparison.holds(value, rule.threshold)
            current = self._active.get(rule.name)

            if firing and current is None:
                instance = AlertInstance(rule=rule, raised_at=snapshot.timestamp,
                                         raised_value=value)
                self._active[rule.name] = instance
                self._history.append(instance)
                transitions.append(AlertTransition(instance, AlertState.ACTIVE, value,
                                                   snapshot.gpu_index, snapshot.timestamp))
            elif not firing and current is not None:
                current.state = AlertState.CLEARED
                current.cleared_at = snapshot.timestamp
                current.cleared_value = value
                del self._active[rule.name]
                transitions.append(AlertTransition(current, AlertState.CLEARED, value,
                                                   snapshot.gpu_index, snapshot.timestamp))

        for transition in transitions:
            self.bus.publish("alert_raised" if transition.raised else "alert_cleared", transition)
        return transitions

    def active(self) -> List[AlertInstance]:
        """Currently active instances, in rule order."""
        return [self._active[rule.name] for rule in self.rules if rule.name in self._active]

    def history(self) -> List[AlertInstance]:
        """Every instance ever raised, oldest first."""
        return list(self._history)

    def acknowledge(self, name: str) -> bool:
        """
        Mark the active instance of a rule as seen.

        Args:
            name: Rule name

        Returns:
            True if the rule had an active instance, False otherwise
        """
        instance = self._active.get(name)
        if instance is None:
            return False
        instance.acknowledged = True
        logging.info("Alert %s acknowledged", name)
        return True

    def silence(self, name: str) -> bool:
        """Stop notifying the active instance of a rule. Returns False if none is active."""
        instance = self._active.get(name)
        if instance is None:
            return False
        instance.silenced = True
        logging.info("Alert %s silenced", name)
        return True

    def count_by_severity(self) -> Dict[Severity, int]:
        """Active, unsilenced instances per severity."""
        counts: Dict[Severity, int] = {}
        for instance in self._active.values():
            if not instance.silenced:
                severity = instance.rule.severity
                counts[severity] = counts.get(severity, 0) + 1
        return counts


def default_rules() -> List[AlertRule]:
    return [
        AlertRule("high-temp", Metric.TEMPERATURE, Comparison.GT, 80, Severity.WARNING),
        AlertRule("critical-temp", Metric.TEMPERATURE, Comparison.GT, 85, Severity.CRITICAL),
        AlertRule("emergency-temp", Metric.TEMPERATURE, Comparison.GT, 90, Severity.EMERGENCY),
        AlertRule("high-power", Metric.POWER_PERCENT, Comparison.GT, 95, Severity.WARNING),
        AlertRule("ecc-uncorrectable", Metric.ECC_UNCORRECTABLE, Comparison.GT, 0,
                  Severity.EMERGENCY),
        AlertRule("pcie-errors", Metric.PCIE_REPLAY, Comparison.GT, 0, Severity.WARNING),
    ]


class LogNotifier:
    """Logs alert transitions published on an event bus."""

    LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: logging.ERROR,
        Severity.EMERGENCY: logging.CRITICAL,
    }

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or event_bus
        self.bus.subscribe("alert_raised", self.notify)
        self.bus.subscribe("alert_cleared", self.notify)

    def notify(self, transition: AlertTransition) -> None:
        if transition.instance.silenced:
            return
        rule = transition.instance.rule
        if transition.raised:
            logging.log(self.LEVELS[rule.severity], "ALERT [%s] GPU %d: %s (value: %.1f)",
                        rule.severity.value.upper(), transition.gpu_index, rule,
                        transition.value)
        else:
            logging.info("RESOLVED GPU %d: %s (value: %.1f)",
                         transition.gpu_index, rule.name, transition.value)

    def close(self) -> None:
        self.bus.unsubscribe("alert_raised", self.notify)
        self.bus.unsubscribe("alert_cleared", self.notify)
