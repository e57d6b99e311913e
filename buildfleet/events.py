"""Algebraic data type for buildfleet events.

Events cover the node lifecycle:
- Provision: NodeLaunching, NodeProvisioned, ProvisioningFailed
- Preemption: NodePreempted, NodeReplaced
- Shutdown: NodeTerminated
- Errors: Error

Consumers pattern-match on them:

    match event:
        case NodeProvisioned(name=name, preemptible=True):
            print(f"{name} is preemptible")
        case Error(message=msg):
            raise RuntimeError(msg)
"""

from __future__ import annotations

from dataclasses import dataclass

# =============================================================================
# Provision Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeLaunching:
    """Insert-instance call issued for a planned node."""

    name: str
    zone: str
    configuration: str


@dataclass(frozen=True, slots=True)
class NodeProvisioned:
    """Instance is running and its node is registered."""

    name: str
    zone: str
    preemptible: bool
    ip: str | None = None


@dataclass(frozen=True, slots=True)
class ProvisioningFailed:
    """A planned node could not be realized."""

    name: str
    reason: str


# =============================================================================
# Preemption Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodePreempted:
    """The provider reclaimed a preemptible instance."""

    name: str
    zone: str
    reason: str


@dataclass(frozen=True, slots=True)
class NodeReplaced:
    """A preempted node was replaced by a freshly provisioned one."""

    old_name: str
    new_name: str
    attempt: int


# =============================================================================
# Shutdown Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeTerminated:
    """Instance deletion requested and node deregistered."""

    name: str


@dataclass(frozen=True, slots=True)
class Error:
    """Error occurred."""

    message: str
    name: str | None = None


type FleetEvent = (
    NodeLaunching
    | NodeProvisioned
    | ProvisioningFailed
    | NodePreempted
    | NodeReplaced
    | NodeTerminated
    | Error
)


__all__ = [
    "NodeLaunching",
    "NodeProvisioned",
    "ProvisioningFailed",
    "NodePreempted",
    "NodeReplaced",
    "NodeTerminated",
    "Error",
    "FleetEvent",
]
