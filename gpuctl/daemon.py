#!/usr/bin/env python3
"""
Control loop daemon.

Enforces a fan curve, and optionally a power ceiling, on one device:

    IDLE --start--> POLLING --polled--> APPLYING --applied--> POLLING ...
                       |                   |  \\--finished--> STOPPED (single use)
                       \\--failed--> BACKOFF <--failed--/
                                     |   \\--retry--> POLLING
                                     \\--fatal--> STOPPED

Any sleep can be interrupted by cancel(), which moves the daemon to STOPPED.
Every successful poll is scored and run through the alert engine before
anything is applied, so a failing fan or power write never hides an alert.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .alerts import AlertEngine, AlertTransition
from .config import DaemonSettings
from .device import Device
from .domain import FanSpeedPercent, PowerConstraints, PowerLimitWatts, TelemetrySnapshot
from .errors import CapabilityError, ConfigurationError, DomainValidationError, GpuCtlError
from .events import EventBus, event_bus
from .health import HealthScore, HealthScorer
from .services import FanService, Outcome, PowerService


class DaemonState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    APPLYING = "applying"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class DaemonEvent(Enum):
    START = "start"
    POLLED = "polled"
    APPLIED = "applied"
    FAILED = "failed"
    FINISHED = "finished"
    RETRY = "retry"
    FATAL = "fatal"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[DaemonState, DaemonEvent], DaemonState] = {
    (DaemonState.IDLE, DaemonEvent.START): DaemonState.POLLING,
    (DaemonState.IDLE, DaemonEvent.FATAL): DaemonState.STOPPED,
    (DaemonState.POLLING, DaemonEvent.POLLED): DaemonState.APPLYING,
    (DaemonState.POLLING, DaemonEvent.FAILED): DaemonState.BACKOFF,
    (DaemonState.APPLYING, DaemonEvent.APPLIED): DaemonState.POLLING,
    (DaemonState.APPLYING, DaemonEvent.FAILED): DaemonState.BACKOFF,
    (DaemonState.APPLYING, DaemonEvent.FINISHED): DaemonState.STOPPED,
    (DaemonState.BACKOFF, DaemonEvent.RETRY): DaemonState.POLLING,
    (DaemonState.BACKOFF, DaemonEvent.FATAL): DaemonState.STOPPED,
}


class InvalidTransition(GpuCtlError):
    """An event arrived that the current state does not accept."""


def next_state(state: DaemonState, event: DaemonEvent) -> DaemonState:
    """
    Look up the transition for an event.

    Cancel is accepted from every state except STOPPED.

    Raises:
        InvalidTransition: if the pair is not in the table
    """
    if event is DaemonEvent.CANCEL and state is not DaemonState.STOPPED:
        return DaemonState.STOPPED
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"No transition from {state.value} on {event.value}")


@dataclass(frozen=True)
class CycleReport:
    """What one control cycle saw and did."""
    cycle: int
    snapshot: TelemetrySnapshot
    target_speed: FanSpeedPercent
    target_power: Optional[PowerLimitWatts]
    outcomes: Tuple[Outcome, ...]
    health: HealthScore
    alerts: Tuple[AlertTransition, ...]
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DaemonStats:
    cycles: int = 0
    failures: int = 0
    retries: int = 0
    last_error: Optional[CapabilityError] = None


class ControlDaemon:
    """
    Runs the control loop for one device on the calling thread.

    The daemon borrows the device; it never opens or closes it. cancel() is
    safe to call from another thread or a signal handler and takes effect at
    the next sleep, or before the first poll if it arrives during startup.
    """

    def __init__(self, device: Device, settings: DaemonSettings,
                 scorer: Optional[HealthScorer] = None,
                 alert_engine: Optional[AlertEngine] = None,
                 bus: Optional[EventBus] = None):
        self.device = device
        self.settings = settings
        self.bus = bus or event_bus
        self.scorer = scorer or HealthScorer()
        self.alerts = alert_engine or AlertEngine(settings.alert_rules, self.bus, self.scorer)
        self.fans = FanService(device, settings.dry_run, self.bus)
        self.power = PowerService(device, settings.dry_run, self.bus)
        self.stats = DaemonStats()

        self._state = DaemonState.IDLE
        self._cancel = threading.Event()
        self._listeners: List[Callable[[CycleReport], None]] = []
        self._power_limit: Optional[PowerLimitWatts] = None
        self._snapshot: Optional[TelemetrySnapshot] = None
        self._health: Optional[HealthScore] = None
        self._transitions: List[AlertTransition] = []
        self._fatal: Optional[GpuCtlError] = None

    @property
    def state(self) -> DaemonState:
        return self._state

    def add_listener(self, callback: Callable[[CycleReport], None]) -> None:
        """Call `callback` with every CycleReport, before it is published on the bus."""
        self._listeners.append(callback)

    def cancel(self) -> None:
        """Ask the daemon to stop at its next sleep."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _fire(self, event: DaemonEvent) -> None:
        previous = self._state
        self._state = next_state(previous, event)
        logging.debug("%s: %s --%s--> %s", self.device.handle, previous.value,
                      event.value, self._state.value)
        self.bus.publish("daemon_state", {"from": previous, "to": self._state, "event": event})

    def _sleep(self, seconds: float) -> bool:
        """Wait, returning False if cancelled meanwhile."""
        return not self._cancel.wait(seconds)

    def _read_constraints(self) -> Optional[PowerConstraints]:
        """Read the power range, retrying like the loop does. None if cancelled meanwhile."""
        while True:
            try:
                return self.device.power_constraints()
            except CapabilityError as e:
                if self.settings.single_use or not self.settings.retry:
                    raise
                self.stats.failures += 1
                self.stats.retries += 1
                self.stats.last_error = e
                logging.warning("%s: recoverable error, retrying in %ss: %s",
                                self.device.handle, self.settings.retry_interval, e)
                if not self._sleep(self.settings.retry_interval):
                    return None

    def _resolve_power_limit(self) -> Optional[PowerLimitWatts]:
        watts = self.settings.power_limit_watts
        if watts is None:
            return None
        constraints = self._read_constraints()
        if constraints is None:
            return None
        try:
            return PowerLimitWatts(watts, constraints)
        except DomainValidationError as e:
            raise ConfigurationError(
                f"power_limit {watts}W not accepted by {self.device.handle}: {e}")

    def run(self) -> DaemonStats:
        """
        Run until stopped.

        Returns:
            DaemonStats once the daemon reaches STOPPED

        Raises:
            ConfigurationError: if startup settings are rejected by the device
            CapabilityError: the first failure when retry is disabled, or the
                cycle's failure in single-use mode. Reading the power range at
                startup follows the same retry rules as the loop.
        """
        if self._state is not DaemonState.IDLE:
            raise GpuCtlError(f"Daemon already {self._state.value}")

        try:
            self._power_limit = self._resolve_power_limit()
        except GpuCtlError:
            logging.critical("%s: startup failed", self.device.handle)
            self._fire(DaemonEvent.FATAL)
            raise

        if self.cancelled:
            self._fire(DaemonEvent.CANCEL)
            logging.info("%s: daemon cancelled during startup", self.device.handle)
            return self.stats

        logging.info("Controlling %s: curve %s, power limit %s, interval %ss%s",
                     self.device.handle, self.settings.curve, self._power_limit or "unchanged",
                     self.settings.interval, " (dry run)" if self.settings.dry_run else "")
        self._fire(DaemonEvent.START)

        try:
            while self._state is not DaemonState.STOPPED:
                if self._state is DaemonState.POLLING:
                    self._poll()
                elif self._state is DaemonState.APPLYING:
                    self._apply()
                elif self._state is DaemonState.BACKOFF:
                    self._backoff()
        finally:
            self._on_exit()

        if self._fatal is not None:
            raise self._fatal
        logging.info("%s: daemon stopped after %d cycles", self.device.handle, self.stats.cycles)
        return self.stats

    def _poll(self) -> None:
        try:
            snapshot = self.device.snapshot()
        except CapabilityError as e:
            self._fail(e)
            return
        self._snapshot = snapshot
        self._health = self.scorer.score(snapshot)
        self._transitions = self.alerts.evaluate(snapshot)
        self._fire(DaemonEvent.POLLED)

    def _apply(self) -> None:
        try:
            report = self._cycle(self._snapshot)
        except CapabilityError as e:
            self._fail(e)
            return

        for listener in self._listeners:
            listener(report)
        self.bus.publish("cycle_completed", report)

        if self.settings.single_use:
            self._fire(DaemonEvent.FINISHED)
        elif self._sleep(self.settings.interval):
            self._fire(DaemonEvent.APPLIED)
        else:
            self._fire(DaemonEvent.CANCEL)

    def _cycle(self, snapshot: TelemetrySnapshot) -> CycleReport:
        target_speed = self.settings.curve.speed_at(snapshot.temperature)
        outcomes = [self.fans.set_speed(target_speed)]
        if self._power_limit is not None and snapshot.power_limit_watts != self._power_limit.watts:
            outcomes.append(self.power.set_limit(self._power_limit))

        self.stats.cycles += 1
        logging.debug("%s: %s -> fans %s, health %s", self.device.handle,
                      snapshot.temperature, target_speed, self._health)
        return CycleReport(
            cycle=self.stats.cycles,
            snapshot=snapshot,
            target_speed=target_speed,
            target_power=self._power_limit,
            outcomes=tuple(outcomes),
            health=self._health,
            alerts=tuple(self._transitions),
        )

    def _fail(self, error: CapabilityError) -> None:
        self.stats.failures += 1
        self.stats.last_error = error
        self._fire(DaemonEvent.FAILED)

    def _backoff(self) -> None:
        error = self.stats.last_error
        if self.settings.single_use or not self.settings.retry:
            logging.critical("%s: fatal error, stopping: %s", self.device.handle, error)
            self._fatal = error
            self._fire(DaemonEvent.FATAL)
            return

        logging.warning("%s: recoverable error, retrying in %ss: %s", self.device.handle,
                        self.settings.retry_interval, error)
        self.stats.retries += 1
        if self._sleep(self.settings.retry_interval):
            self._fire(DaemonEvent.RETRY)
        else:
            self._fire(DaemonEvent.CANCEL)

    def _on_exit(self) -> None:
        if not self.settings.restore_auto_on_exit or self.settings.dry_run:
            return
        try:
            self.fans.restore_auto()
            logging.info("%s: fan control returned to driver", self.device.handle)
        except CapabilityError as e:
            # The failure that stopped the loop, if any, is the one that propagates.
            logging.error("%s: could not restore automatic fan control: %s",
                          self.device.handle, e)
