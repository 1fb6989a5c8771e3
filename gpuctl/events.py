#!/usr/bin/env python3
"""
In-process event bus.

The daemon, the services and the alert engine publish here; presentation
layers (a CLI printer, a GUI, a notifier) subscribe. Callbacks run
synchronously on the publishing thread, in subscription order.

Events:
    action_applied / action_dry_run  {"device", "outcome"}
    cycle_completed                  CycleReport
    daemon_state                     {"from", "to", "event"}
    alert_raised / alert_cleared     AlertTransition
"""

from typing import Any, Callable, Dict, List


class EventBus:
    """
    Publish/subscribe hub keyed by event name.

    Events carry an arbitrary payload.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, event_name: str, callback: Callable[[Any], None]) -> None:
        """
        Subscribe to an event.

        Args:
            event_name: Name of the event to subscribe to
            callback: Function to call when the event is published
        """
        self._subscribers.setdefault(event_name, []).append(callback)

    def unsubscribe(self, event_name: str, callback: Callable[[Any], None]) -> None:
        """
        Unsubscribe from an event.

        Args:
            event_name: Name of the event to unsubscribe from
            callback: Function to remove from subscribers
        """
        if event_name in self._subscribers and callback in self._subscribers[event_name]:
            self._subscribers[event_name].remove(callback)

    def publish(self, event_name: str, payload: Any = None) -> None:
        """
        Publish an event with optional payload.

        Args:
            event_name: Name of the event to publish
            payload: Data to send with the event
        """
        for callback in list(self._subscribers.get(event_name, ())):
            callback(payload)

    def clear(self) -> None:
        """Drop every subscription."""
        self._subscribers.clear()


# Process-wide bus used when no bus is injected
event_bus = EventBus()
