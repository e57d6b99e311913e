"""Custom exception hierarchy for buildfleet.

All buildfleet-specific exceptions inherit from BuildFleetError, enabling
callers to catch every buildfleet failure with a single except clause.
"""

from __future__ import annotations


class BuildFleetError(Exception):
    """Base exception for all buildfleet errors."""


class ConfigurationError(BuildFleetError):
    """Raised for invalid configuration or missing required settings."""


class ProvisioningError(BuildFleetError):
    """Raised when an instance cannot be created or never becomes ready."""

    def __init__(self, message: str, instance: str | None = None) -> None:
        self.instance = instance
        super().__init__(message)


class NoMatchingConfigurationError(ProvisioningError):
    """Raised when no instance configuration accepts the requested label."""

    def __init__(self, label: str | None) -> None:
        self.label = label
        super().__init__(f"No instance configuration matches label {label!r}")


class InstanceCapReachedError(ProvisioningError):
    """Raised when the cloud already runs as many instances as allowed."""

    def __init__(self, cap: int) -> None:
        self.cap = cap
        super().__init__(f"Instance cap of {cap} reached")


class PreemptionError(BuildFleetError):
    """Raised when a preempted node cannot be handled by its policy."""

    def __init__(self, instance: str, reason: str, attempts: int = 0) -> None:
        self.instance = instance
        self.reason = reason
        self.attempts = attempts
        msg = f"Instance {instance} preempted: {reason}"
        if attempts:
            msg += f" (replacement failed after {attempts} attempts)"
        super().__init__(msg)


class TimeoutError(BuildFleetError):  # noqa: A001
    """Raised when a bounded wait expires before its condition holds."""
