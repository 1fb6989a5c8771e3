"""
NVIDIA GPU Control Package.

A modular engine for keeping a GPU on a fan curve and under a power ceiling,
with health scoring and threshold alerts layered on the same telemetry.
"""

__version__ = "0.2.0"

# Core components
from .errors import (GpuCtlError, CapabilityError, CapabilityReason, GpuNotFoundError,
                     DomainValidationError, ConfigurationError)
from .domain import (Temperature, FanSpeedPercent, PowerConstraints, PowerLimitWatts,
                     FanCurvePoint, FanCurve, FanPolicy, AcousticLimits, TelemetrySnapshot)
from .device import Device, Session, GpuHandle, resolve_handle
from .events import EventBus, event_bus
from .config import ConfigManager, DaemonSettings
from .health import HealthScore, HealthScorer, HealthStatus, score_snapshot
from .alerts import AlertEngine, AlertRule, Metric, Comparison, Severity, default_rules
from .daemon import ControlDaemon, DaemonState, CycleReport

# Services
from .services import FanService, PowerService, ThermalService, Applied, DryRun, speed_at

# Providers are not imported here: NvmlDevice needs pynvml, MockDevice is for tests.
# Use `from gpuctl.nvml import NvmlSession` or `from gpuctl.mock import MockDevice`.
__all__ = [
    "GpuCtlError", "CapabilityError", "CapabilityReason", "GpuNotFoundError",
    "DomainValidationError", "ConfigurationError",
    "Temperature", "FanSpeedPercent", "PowerConstraints", "PowerLimitWatts",
    "FanCurvePoint", "FanCurve", "FanPolicy", "AcousticLimits", "TelemetrySnapshot",
    "Device", "Session", "GpuHandle", "resolve_handle",
    "EventBus", "event_bus",
    "ConfigManager", "DaemonSettings",
    "HealthScore", "HealthScorer", "HealthStatus", "score_snapshot",
    "AlertEngine", "AlertRule", "Metric", "Comparison", "Severity", "default_rules",
    "ControlDaemon", "DaemonState", "CycleReport",
    "FanService", "PowerService", "ThermalService", "Applied", "DryRun", "speed_at",
    "__version__"
]
