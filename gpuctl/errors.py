#!/usr/bin/env python3
"""
Error taxonomy for GPU control.

Domain validation runs before any capability call, so a CapabilityError
always comes from a real hardware, driver or permission condition.
"""

from enum import Enum
from typing import Optional


class GpuCtlError(Exception):
    """Base class for every error raised by gpuctl."""


class DomainValidationError(GpuCtlError, ValueError):
    """A value type rejected its input at construction time."""


class ConfigurationError(GpuCtlError):
    """Persisted settings are malformed or out of range."""


class CapabilityReason(Enum):
    """Why a device refused or failed an operation."""
    UNREACHABLE = "unreachable"
    PERMISSION = "permission"
    UNSUPPORTED = "unsupported"
    CONSTRAINT = "constraint"
    UNKNOWN = "unknown"


class CapabilityError(GpuCtlError):
    """
    A device operation failed.

    Carries the operation name and the device it was issued against so the
    daemon log can say which GPU misbehaved.
    """

    def __init__(self, message: str, reason: CapabilityReason = CapabilityReason.UNKNOWN,
                 device: Optional[str] = None, operation: Optional[str] = None):
        self.reason = reason
        self.device = device
        self.operation = operation
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        context = []
        if self.device:
            context.append(self.device)
        if self.operation:
            context.append(self.operation)
        prefix = f"[{' '.join(context)}] " if context else ""
        return f"{prefix}{self.message} ({self.reason.value})"


class GpuNotFoundError(GpuCtlError):
    """No GPU matched a selector."""

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"GPU not found: {selector}")
