from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from buildfleet.api.model import InstanceConfiguration, InstanceState


@runtime_checkable
class ComputeClient(Protocol):
    """Async interface to the cloud's instance API.

    Implementations are stateless apart from their API clients. All node
    lifecycle state lives in the cloud and its registry.
    """

    async def insert_instance(
        self,
        project: str,
        configuration: InstanceConfiguration,
        name: str,
        labels: Mapping[str, str],
    ) -> None:
        """Create an instance and wait for the insert operation to finish.

        Parameters
        ----------
        project
            Project to create the instance in.
        configuration
            Template describing the instance. Its zone is used.
        name
            Instance name.
        labels
            Google labels to set, on top of the configuration's own.

        Raises
        ------
        ProvisioningError
            If the call or its operation fails.
        """
        ...

    async def get_instance(self, project: str, zone: str, name: str) -> InstanceState | None:
        """Current state of an instance, or None if it does not exist."""
        ...

    async def start_instance(self, project: str, zone: str, name: str) -> None:
        """Start a stopped or preempted instance and wait for the operation.

        Raises ProvisioningError if the instance is missing or the start fails.
        """
        ...

    async def delete_instance(self, project: str, zone: str, name: str) -> None:
        """Request deletion of an instance. Missing instances are ignored."""
        ...

    async def list_instances(
        self, project: str, zone: str, labels: Mapping[str, str],
    ) -> list[InstanceState]:
        """Instances in a zone carrying all the given labels."""
        ...

    async def simulate_maintenance_event(self, project: str, zone: str, name: str) -> None:
        """Ask the provider to run a maintenance event on an instance.

        For preemptible instances this preempts the instance.
        """
        ...

    async def preempted_instances(self, project: str, zone: str) -> frozenset[str]:
        """Names of instances the provider has recorded as preempted."""
        ...

    async def close(self) -> None:
        ...
