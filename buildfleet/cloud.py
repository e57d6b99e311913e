"""Compute Engine cloud: turns label requests into registered build agents.

Example:
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
    ) as cloud:
        for planned in cloud.provision("linux", 2):
            node = await asyncio.wait_for(planned.future, timeout=600)
            computer = cloud.registry.computer(node.name)
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections.abc import Iterable, Mapping
from types import TracebackType

from loguru import logger

from buildfleet.api.model import InstanceConfiguration, PlannedNode
from buildfleet.callback import emit_safely
from buildfleet.client.base import ComputeClient
from buildfleet.core.exceptions import (
    ConfigurationError,
    InstanceCapReachedError,
    NoMatchingConfigurationError,
    ProvisioningError,
)
from buildfleet.events import NodeLaunching, NodeProvisioned, NodeTerminated, ProvisioningFailed
from buildfleet.labels import sanitize_label_value
from buildfleet.node import ComputeNode
from buildfleet.observability.logging import LogConfig, setup_logging, teardown_logging
from buildfleet.preemption import PreemptionWatcher
from buildfleet.registry import NodeRegistry
from buildfleet.spec.preemption import PreemptionConfig, normalize_preemption
from buildfleet.wait import wait_for_ready

log = logger.bind(component="cloud")

CLOUD_LABEL = "buildfleet-cloud"
CONFIG_LABEL = "buildfleet-config"


class ComputeEngineCloud:
    """Provisions Compute Engine instances as build agents.

    Args:
        name: Cloud name. Also labels every instance the cloud creates.
        client: Compute client used for every API call.
        project: Project instances are created in.
        configurations: Instance configurations, tried in order.
        instance_cap: Maximum nodes (running plus pending). None is unbounded.
        registry: Node registry. A private one is created if omitted.
        preemption: Preemption policy for preemptible nodes.
        terminate_on_close: Delete this cloud's instances on close().
        logging: Logging sinks to install while the cloud is started.
        ready_interval: Seconds between instance status polls during launch.
    """

    def __init__(
        self,
        name: str,
        client: ComputeClient,
        project: str,
        configurations: Iterable[InstanceConfiguration] = (),
        *,
        instance_cap: int | None = None,
        registry: NodeRegistry | None = None,
        preemption: PreemptionConfig = None,
        terminate_on_close: bool = True,
        logging: LogConfig | bool = False,
        ready_interval: float = 5.0,
    ) -> None:
        if not sanitize_label_value(name):
            raise ConfigurationError(f"Invalid cloud name: {name!r}")
        if instance_cap is not None and instance_cap < 0:
            raise ConfigurationError("instance_cap cannot be negative")

        self.name = name
        self.project = project
        self.instance_cap = instance_cap
        self.registry = registry if registry is not None else NodeRegistry()
        self.preemption = normalize_preemption(preemption)
        self.terminate_on_close = terminate_on_close
        self.ready_interval = ready_interval

        self._client = client
        self._configurations: tuple[InstanceConfiguration, ...] = tuple(configurations)
        self._pending: dict[str, asyncio.Task[ComputeNode]] = {}
        self._log_config = LogConfig() if logging is True else logging or None
        self._log_handlers: list[int] = []
        self._started = False
        self._log = log.bind(cloud=name)

        self._watcher = PreemptionWatcher(
            client=client,
            project=project,
            registry=self.registry,
            cloud_name=name,
            config=self.preemption,
            provision=self.provision_one,
            terminate=self.terminate,
        )

    @property
    def client(self) -> ComputeClient:
        return self._client

    @property
    def configurations(self) -> tuple[InstanceConfiguration, ...]:
        return self._configurations

    @property
    def labels(self) -> dict[str, str]:
        """Google labels put on every instance of this cloud."""
        return {CLOUD_LABEL: sanitize_label_value(self.name)}

    @property
    def watcher(self) -> PreemptionWatcher:
        return self._watcher

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def set_configurations(self, configurations: Iterable[InstanceConfiguration]) -> None:
        self._configurations = tuple(configurations)

    def get_configuration(self, label: str | None) -> InstanceConfiguration | None:
        """First configuration able to serve ``label``."""
        return next((c for c in self._configurations if c.matches(label)), None)

    def can_provision(self, label: str | None) -> bool:
        return self.get_configuration(label) is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        if self._log_config:
            self._log_handlers = setup_logging(self._log_config)
        self._watcher.start()
        self._started = True
        self._log.info(
            "Cloud started (project={project}, preemption={policy})",
            project=self.project, policy=self.preemption.policy,
        )

    async def close(self) -> None:
        """Stop watching, cancel pending launches and release instances."""
        await self._watcher.shutdown()

        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self.terminate_on_close:
            computers = self.registry.computers(cloud_name=self.name)
            results = await asyncio.gather(
                *(self.terminate(c.name) for c in computers), return_exceptions=True,
            )
            for computer, result in zip(computers, results, strict=True):
                if isinstance(result, Exception):
                    self._log.error(
                        "Failed to terminate {node}: {err}", node=computer.name, err=result,
                    )

        if self._started:
            self._log.info("Cloud closed")
        teardown_logging(self._log_handlers)
        self._log_handlers = []
        self._started = False

    async def __aenter__(self) -> ComputeEngineCloud:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def provision(self, label: str | None, count: int) -> list[PlannedNode]:
        """Plan nodes for ``count`` executors of workload on ``label``.

        Must be called from a running event loop. Each returned future
        resolves to a registered node, or fails with ProvisioningError.
        Returns fewer nodes than needed (possibly none) when no
        configuration matches or the instance cap is reached.
        """
        configuration = self.get_configuration(label)
        if configuration is None:
            self._log.warning("No configuration matches label {label!r}", label=label)
            return []
        if count <= 0:
            return []

        wanted = math.ceil(count / configuration.num_executors)
        capacity = self._available_capacity()
        allowed = wanted if capacity is None else min(wanted, capacity)
        if allowed < wanted:
            self._log.info(
                "Instance cap {cap} limits provisioning to {n} of {wanted} nodes",
                cap=self.instance_cap, n=allowed, wanted=wanted,
            )

        self._log.info(
            "Provisioning {n} node(s) for label {label!r} with {prefix}",
            n=allowed, label=label, prefix=configuration.name_prefix,
        )
        return [self._plan(configuration) for _ in range(allowed)]

    async def provision_one(
        self, configuration: InstanceConfiguration | str | None,
    ) -> ComputeNode:
        """Provision a single node and wait for it.

        ``configuration`` may also be a label to look a configuration up.

        Raises:
            NoMatchingConfigurationError: If no configuration serves the label.
            InstanceCapReachedError: If the cloud is at its instance cap.
            ProvisioningError: If the launch fails.
        """
        if not isinstance(configuration, InstanceConfiguration):
            label = configuration
            configuration = self.get_configuration(label)
            if configuration is None:
                raise NoMatchingConfigurationError(label)
        if self._available_capacity() == 0:
            raise InstanceCapReachedError(self.instance_cap or 0)
        return await self._plan(configuration).future

    async def terminate(self, name: str) -> None:
        """Delete a node's instance, then deregister it.

        If the delete fails the node stays registered, so a later
        terminate (or close) retries it.
        """
        computer = self.registry.computer(name)
        if computer is None:
            self._log.debug("Node {node} not registered", node=name)
            return
        computer.mark_terminating()
        try:
            await self._client.delete_instance(self.project, computer.node.zone, name)
        except BaseException:
            computer.mark_terminating(False)
            raise
        self.registry.remove(name)
        computer.set_offline("terminated")
        emit_safely(NodeTerminated(name=name))
        self._log.info("Terminated node {node}", node=name)

    def _available_capacity(self) -> int | None:
        if self.instance_cap is None:
            return None
        used = len(self.registry.computers(cloud_name=self.name)) + len(self._pending)
        return max(self.instance_cap - used, 0)

    def _plan(self, configuration: InstanceConfiguration) -> PlannedNode:
        if not self._watcher.running:
            self._watcher.start()
        name = f"{configuration.name_prefix}-{uuid.uuid4().hex[:6]}"
        task = asyncio.get_running_loop().create_task(
            self._launch(configuration, name), name=f"launch-{name}",
        )
        self._pending[name] = task
        task.add_done_callback(lambda _: self._pending.pop(name, None))
        return PlannedNode(
            display_name=name,
            future=task,
            num_executors=configuration.num_executors,
        )

    def _instance_labels(self, configuration: InstanceConfiguration) -> Mapping[str, str]:
        return {
            **self.labels,
            CONFIG_LABEL: sanitize_label_value(configuration.name_prefix),
        }

    async def _launch(self, configuration: InstanceConfiguration, name: str) -> ComputeNode:
        nlog = self._log.bind(node=name, zone=configuration.zone)
        zone = configuration.zone
        emit_safely(NodeLaunching(name=name, zone=zone, configuration=configuration.name_prefix))

        try:
            await self._client.insert_instance(
                self.project, configuration, name, self._instance_labels(configuration),
            )
            state = await wait_for_ready(
                lambda: self._client.get_instance(self.project, zone, name),
                lambda s: s.running,
                terminal_check=lambda s: s.terminal,
                timeout=configuration.launch_timeout,
                interval=self.ready_interval,
                description=f"instance {name}",
            )
        except asyncio.CancelledError:
            nlog.info("Launch of {node} cancelled", node=name)
            await self._discard(zone, name)
            raise
        except Exception as e:
            nlog.error("Failed to provision {node}: {err}", node=name, err=e)
            emit_safely(ProvisioningFailed(name=name, reason=str(e)))
            await self._discard(zone, name)
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(f"Failed to provision {name}: {e}", instance=name) from e

        node = ComputeNode.from_configuration(name, configuration, self.name)
        self.registry.add(node)
        emit_safely(NodeProvisioned(
            name=name, zone=zone, preemptible=node.preemptible, ip=state.ip,
        ))
        nlog.info(
            "Node {node} online (ip={ip}, preemptible={preemptible})",
            node=name, ip=state.ip, preemptible=node.preemptible,
        )
        return node

    async def _discard(self, zone: str, name: str) -> None:
        try:
            await self._client.delete_instance(self.project, zone, name)
        except Exception as e:
            self._log.warning("Failed to delete instance {node}: {err}", node=name, err=e)


async def teardown_resources(
    client: ComputeClient,
    project: str,
    zone: str,
    labels: Mapping[str, str],
) -> list[str]:
    """Delete every instance in ``zone`` carrying all of ``labels``.

    Keeps going past individual failures and returns the names deleted.
    """
    instances = await client.list_instances(project, zone, labels)
    results = await asyncio.gather(
        *(client.delete_instance(project, zone, s.name) for s in instances),
        return_exceptions=True,
    )

    deleted: list[str] = []
    for state, result in zip(instances, results, strict=True):
        if isinstance(result, BaseException):
            log.error("Failed to delete {node}: {err}", node=state.name, err=result)
        else:
            deleted.append(state.name)
    log.info("Teardown deleted {n} instance(s) in {zone}", n=len(deleted), zone=zone)
    return deleted


__all__ = ["CLOUD_LABEL", "CONFIG_LABEL", "ComputeEngineCloud", "teardown_resources"]
