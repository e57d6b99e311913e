from buildfleet.api.model import (
    InstanceConfiguration,
    InstanceState,
    InstanceStatus,
    NodeMode,
    PlannedNode,
)

__all__ = [
    "InstanceConfiguration",
    "InstanceState",
    "InstanceStatus",
    "NodeMode",
    "PlannedNode",
]
