"""buildfleet - Compute Engine build agents that know when they are preempted.

Example:

    from buildfleet import ComputeEngineCloud, InstanceConfiguration, await_condition
    from buildfleet.client.gce import GCEClient

    config = InstanceConfiguration(
        name_prefix="agent",
        zone="us-central1-a",
        labels="linux",
        preemptible=True,
    )

    async with ComputeEngineCloud(
        name="gce",
        client=await GCEClient.create(),
        project="my-project",
        configurations=[config],
        preemption="replace",
    ) as cloud:
        planned = cloud.provision("linux", 1)
        node = await planned[0].future
        computer = cloud.registry.computer(node.name)
        await await_condition(lambda: computer.preempted, timeout=60)
"""

from buildfleet.api.model import InstanceConfiguration, InstanceState, PlannedNode

# Callback system
from buildfleet.callback import Callback, compose, emit, only, recording, use_callback
from buildfleet.cloud import ComputeEngineCloud, teardown_resources
from buildfleet.client.base import ComputeClient
from buildfleet.config import CloudConfig, load_config, resolve_cloud
from buildfleet.core.exceptions import (
    BuildFleetError,
    ConfigurationError,
    InstanceCapReachedError,
    NoMatchingConfigurationError,
    PreemptionError,
    ProvisioningError,
    TimeoutError,
)

# Events (ADT)
from buildfleet.events import (
    Error,
    FleetEvent,
    NodeLaunching,
    NodePreempted,
    NodeProvisioned,
    NodeReplaced,
    NodeTerminated,
    ProvisioningFailed,
)
from buildfleet.node import ComputeNode, Computer
from buildfleet.observability.logging import LogConfig
from buildfleet.registry import NodeRegistry
from buildfleet.spec.preemption import Preemption
from buildfleet.wait import await_condition, wait_for_ready

__all__ = [
    # Cloud
    "ComputeEngineCloud",
    "teardown_resources",
    "ComputeClient",
    "CloudConfig",
    "load_config",
    "resolve_cloud",
    # Model
    "InstanceConfiguration",
    "InstanceState",
    "PlannedNode",
    "ComputeNode",
    "Computer",
    "NodeRegistry",
    "Preemption",
    "LogConfig",
    # Waiting
    "await_condition",
    "wait_for_ready",
    # Callbacks
    "Callback",
    "compose",
    "emit",
    "only",
    "recording",
    "use_callback",
    # Events
    "FleetEvent",
    "NodeLaunching",
    "NodeProvisioned",
    "ProvisioningFailed",
    "NodePreempted",
    "NodeReplaced",
    "NodeTerminated",
    "Error",
    # Exceptions
    "BuildFleetError",
    "ConfigurationError",
    "InstanceCapReachedError",
    "NoMatchingConfigurationError",
    "PreemptionError",
    "ProvisioningError",
    "TimeoutError",
]
