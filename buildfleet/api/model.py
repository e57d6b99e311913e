from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal

from buildfleet.core.exceptions import ConfigurationError
from buildfleet.labels import parse_labels, validate_google_labels

if TYPE_CHECKING:
    from buildfleet.node import ComputeNode

type NodeMode = Literal["normal", "exclusive"]

type InstanceStatus = Literal[
    "PROVISIONING",
    "STAGING",
    "RUNNING",
    "STOPPING",
    "STOPPED",
    "SUSPENDING",
    "SUSPENDED",
    "REPAIRING",
    "TERMINATED",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"STOPPING", "STOPPED", "TERMINATED"})

_NAME_PREFIX = re.compile(r"^[a-z][-a-z0-9]{0,55}$")


@dataclass(frozen=True, slots=True)
class InstanceConfiguration:
    """Immutable template describing how to create a build agent instance.

    One configuration is consumed per provisioning call; the cloud never
    mutates it. Build configurations from raw mappings (TOML, forms) with
    ``from_mapping``, which coerces string fields such as ``num_executors``.

    Example:
        >>> config = InstanceConfiguration(
        ...     name_prefix="agent",
        ...     zone="us-central1-a",
        ...     labels="linux docker",
        ...     preemptible=True,
        ... )
        >>> config.matches("linux")
        True

    Args:
        name_prefix: Prefix of created instance names.
        zone: Compute Engine zone.
        machine_type: Machine type name (e.g. "n1-standard-1").
        num_executors: Executors per node; ``provision`` divides the
            requested workload by this.
        startup_script: Script installed as ``startup-script`` metadata.
        labels: Build label atoms (a space-separated string is accepted).
        mode: "normal" also serves unlabeled requests, "exclusive" only
            requests whose label matches.
        preemptible: Create the instance as preemptible.
        template: Instance template URL. When set, the instance is created
            from it and the inline resource fields are ignored.
        google_labels: Key/value labels set on the instance.
        launch_timeout: Seconds to wait for the instance to reach RUNNING.
    """

    name_prefix: str
    zone: str
    machine_type: str = "n1-standard-1"
    num_executors: int = 1
    startup_script: str = ""
    labels: frozenset[str] = frozenset()
    mode: NodeMode = "normal"
    preemptible: bool = False
    template: str | None = None
    google_labels: Mapping[str, str] = field(default_factory=dict, hash=False)
    description: str = ""
    network: str = "default"
    subnetwork: str | None = None
    external_address: bool = True
    network_tags: tuple[str, ...] = ()
    service_account_email: str | None = None
    boot_disk_image: str = "projects/debian-cloud/global/images/family/debian-12"
    boot_disk_type: str = "pd-balanced"
    boot_disk_size_gb: int = 10
    boot_disk_auto_delete: bool = True
    launch_timeout: float = 300.0

    def __post_init__(self) -> None:
        if isinstance(self.labels, str):
            object.__setattr__(self, "labels", parse_labels(self.labels))
        else:
            object.__setattr__(self, "labels", frozenset(self.labels))
        object.__setattr__(
            self,
            "google_labels",
            MappingProxyType(validate_google_labels(self.google_labels)),
        )
        object.__setattr__(self, "network_tags", tuple(self.network_tags))

        if not _NAME_PREFIX.match(self.name_prefix):
            raise ConfigurationError(f"Invalid instance name prefix: {self.name_prefix!r}")
        if not self.zone:
            raise ConfigurationError("Instance configuration requires a zone")
        if self.num_executors < 1:
            raise ConfigurationError(
                f"num_executors must be at least 1, got {self.num_executors}"
            )
        if self.launch_timeout <= 0:
            raise ConfigurationError("launch_timeout must be positive")
        if self.mode not in ("normal", "exclusive"):
            raise ConfigurationError(f"Unknown node mode: {self.mode!r}")

    @property
    def region(self) -> str:
        """Region of the zone (e.g. 'us-central1-a' -> 'us-central1')."""
        return self.zone.rsplit("-", 1)[0]

    @property
    def label_string(self) -> str:
        return " ".join(sorted(self.labels))

    def matches(self, label: str | None) -> bool:
        """Check whether this configuration can serve a label request."""
        if label is None:
            return self.mode == "normal"
        atoms = parse_labels(label)
        return bool(atoms) and atoms <= self.labels

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> InstanceConfiguration:
        """Build a configuration from loosely typed values.

        Raises:
            ConfigurationError: On unknown keys or non-numeric executor counts.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown instance configuration keys: {', '.join(sorted(unknown))}"
            )

        values = dict(raw)
        if isinstance(values.get("num_executors"), str):
            try:
                values["num_executors"] = int(values["num_executors"].strip())
            except ValueError:
                raise ConfigurationError(
                    f"num_executors must be a number, got {raw['num_executors']!r}"
                ) from None
        if isinstance(labels := values.get("labels"), list | tuple):
            values["labels"] = frozenset(labels)
        if "launch_timeout" in values:
            values["launch_timeout"] = float(values["launch_timeout"])

        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e


@dataclass(frozen=True, slots=True)
class InstanceState:
    """Provider view of an instance at the time it was queried."""

    name: str
    zone: str
    status: InstanceStatus
    preemptible: bool = False
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)
    ip: str | None = None
    id: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "RUNNING"

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class PlannedNode:
    """An in-flight provisioning operation.

    ``future`` resolves to the registered node, or fails with
    ProvisioningError. Await it with a bound:

        node = await asyncio.wait_for(planned.future, timeout=600)
    """

    display_name: str
    future: asyncio.Future[ComputeNode]
    num_executors: int
