#!/usr/bin/env python3
"""
Configuration manager for the control daemon.

Handles loading the YAML settings file and turning it into validated
DaemonSettings. Values that the domain types reject are reported as
ConfigurationError before the daemon touches any hardware.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .alerts import AlertRule, default_rules
from .domain import FanCurve
from .errors import ConfigurationError, DomainValidationError

DEFAULT_CURVE_POINTS = ["40:30", "60:50", "75:80", "85:100"]
DEFAULT_CURVE_SPEED = 30
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DaemonSettings:
    """Everything the control loop needs, already validated.

    - curve: fan curve enforced every cycle
    - power_limit_watts: optional ceiling; converted against the device's
      constraints when the daemon starts
    - interval: seconds between cycles
    - retry / retry_interval: whether capability errors are retried, and how
      long to wait before retrying
    - single_use: run one cycle and stop
    - dry_run: compute targets without applying them
    - restore_auto_on_exit: hand fans back to the driver when stopping
    - alert_rules: rules evaluated against every snapshot
    """
    curve: FanCurve = field(default_factory=FanCurve.default_curve)
    power_limit_watts: Optional[int] = None
    interval: float = 5.0
    retry: bool = True
    retry_interval: float = 10.0
    single_use: bool = False
    dry_run: bool = False
    restore_auto_on_exit: bool = False
    alert_rules: Tuple[AlertRule, ...] = ()

    def __post_init__(self):
        if self.interval <= 0:
            raise ConfigurationError(f"interval must be positive, got {self.interval}")
        if self.retry_interval <= 0:
            raise ConfigurationError(
                f"retry_interval must be positive, got {self.retry_interval}")
        object.__setattr__(self, "alert_rules", tuple(self.alert_rules))


def find_config_file(specified_path: Optional[str] = None) -> Optional[str]:
    """
    Find the configuration file.

    Searches in order: specified path, working directory, /etc, user's config.
    An explicitly specified path that does not exist is an error rather than a
    reason to fall back.

    Raises:
        ConfigurationError: if specified_path does not exist
    """
    if specified_path:
        if not os.path.exists(specified_path):
            raise ConfigurationError(f"Configuration file not found: {specified_path}")
        return specified_path

    search_paths = [
        Path.cwd() / "config.yaml",
        Path("/etc/gpuctl/config.yaml"),
        Path.home() / ".config/gpuctl/config.yaml",
    ]

    for path in search_paths:
        if path.exists():
            return str(path)

    return None


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    return float(value)


def _flag(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be true or false, got {value!r}")
    return value


class ConfigManager:
    """
    Manages loading and accessing configuration from a YAML file.

    With no path the manager serves defaults only. Call reload() to pick up
    edits; settings() re-validates on every call.
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize the configuration manager with a config file path."""
        self.config_path = config_path
        self._config: Dict[str, Any] = {}

        if config_path:
            self.reload()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigManager":
        """Build a manager from an already-parsed mapping."""
        manager = cls()
        manager._config = cls._check_root(data)
        return manager

    @staticmethod
    def _check_root(data: Any) -> Dict[str, Any]:
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping, got {type(data).__name__}")
        return data

    def reload(self) -> None:
        """
        Reload configuration from the YAML file.

        Raises:
            ConfigurationError: if the file is missing or is not valid YAML
        """
        if not self.config_path or not os.path.exists(self.config_path):
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing {self.config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error reading {self.config_path}: {e}")

        self._config = self._check_root(data)

    @property
    def gpu(self) -> str:
        """Index, UUID or name substring of the GPU to control."""
        return str(self._config.get("gpu", "0"))

    @property
    def interval(self) -> float:
        """Seconds between control cycles."""
        return _number(self._config.get("interval", 5), "interval")

    @property
    def retry(self) -> bool:
        """Retry after capability errors instead of stopping."""
        return _flag(self._config.get("retry", True), "retry")

    @property
    def retry_interval(self) -> float:
        """Seconds to back off before retrying."""
        return _number(self._config.get("retry_interval", 10), "retry_interval")

    @property
    def single_use(self) -> bool:
        return _flag(self._config.get("single_use", False), "single_use")

    @property
    def dry_run(self) -> bool:
        return _flag(self._config.get("dry_run", False), "dry_run")

    @property
    def restore_auto_on_exit(self) -> bool:
        """Return fans to driver control when the daemon stops."""
        return _flag(self._config.get("restore_auto_on_exit", False), "restore_auto_on_exit")

    @property
    def fan_curve(self) -> FanCurve:
        """Fan curve from the fan_curve section, or the built-in default."""
        section = self._config.get("fan_curve") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("fan_curve must be a mapping")
        points = section.get("points", DEFAULT_CURVE_POINTS)
        if not isinstance(points, list):
            raise ConfigurationError("fan_curve.points must be a list")
        try:
            return FanCurve.parse(points, section.get("default_speed", DEFAULT_CURVE_SPEED))
        except DomainValidationError as e:
            raise ConfigurationError(f"Invalid fan_curve: {e}")

    @property
    def power_limit(self) -> Optional[int]:
        """Optional power ceiling in watts."""
        value = self._config.get("power_limit")
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"power_limit must be an integer (watts), got {value!r}")
        return value

    @property
    def log_file(self) -> str:
        """Log file for daemon output."""
        return self._config.get("log_file", "/var/log/gpuctl.log")

    @property
    def log_level(self) -> str:
        level = str(self._config.get("log_level", "INFO")).upper()
        if level not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @property
    def alert_rules(self) -> List[AlertRule]:
        """Alert rules from the alerts list; the default set when the key is absent."""
        if "alerts" not in self._config:
            return default_rules()
        # An explicit empty list (or a bare "alerts:") turns alerting off.
        entries = self._config["alerts"] or []
        if not isinstance(entries, list):
            raise ConfigurationError("alerts must be a list of rules")
        rules = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Alert rule must be a mapping, got {entry!r}")
            rules.append(AlertRule.from_dict(entry))
        return rules

    def settings(self, **overrides: Union[bool, float, int, None]) -> DaemonSettings:
        """
        Build validated daemon settings.

        Args:
            **overrides: Values that replace the file's (e.g. from the command
                line); None leaves the file's value in place

        Returns:
            DaemonSettings

        Raises:
            ConfigurationError: on any invalid value
        """
        values = dict(
            curve=self.fan_curve,
            power_limit_watts=self.power_limit,
            interval=self.interval,
            retry=self.retry,
            retry_interval=self.retry_interval,
            single_use=self.single_use,
            dry_run=self.dry_run,
            restore_auto_on_exit=self.restore_auto_on_exit,
            alert_rules=tuple(self.alert_rules),
        )
        for key, value in overrides.items():
            if key not in values:
                raise ConfigurationError(f"Unknown setting: {key}")
            if value is not None:
                values[key] = value
        return DaemonSettings(**values)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value by key."""
        return self._config.get(key, default)
