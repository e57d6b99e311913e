"""Preemption detection and handling for preemptible agents.

The preemption system follows a detect-emit-react pattern:
1. A Monitor calls the preemption_check() function periodically
2. The check returns NodePreempted events without touching any state
3. PreemptionHandler flags the Computer and applies the configured policy

Detection is provider-polled: an instance counts as preempted when the
provider recorded a preemption operation for it, or when a preemptible
instance is found stopped or gone while its node is still registered.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from loguru import logger

from buildfleet.api.model import InstanceConfiguration
from buildfleet.callback import emit, emit_safely
from buildfleet.client.base import ComputeClient
from buildfleet.core.exceptions import PreemptionError, ProvisioningError
from buildfleet.events import Error, FleetEvent, NodePreempted, NodeReplaced
from buildfleet.monitor import Monitor, monitor
from buildfleet.node import ComputeNode, Computer
from buildfleet.registry import NodeRegistry
from buildfleet.spec.preemption import Preemption

log = logger.bind(component="preemption")

type Provision = Callable[[InstanceConfiguration], Awaitable[ComputeNode]]
type Terminate = Callable[[str], Awaitable[None]]


def preemption_check(
    client: ComputeClient,
    project: str,
    registry: NodeRegistry,
    cloud_name: str,
) -> Callable[[], Awaitable[list[FleetEvent]]]:
    """Create a check function for preemption monitoring.

    Only preemptible computers of ``cloud_name`` that are neither flagged
    nor being terminated are examined.
    """

    async def check() -> list[FleetEvent]:
        candidates = [
            c for c in registry.computers(cloud_name=cloud_name)
            if c.preemptible and not c.preempted and not c.terminating
        ]
        if not candidates:
            return []

        zones = sorted({c.node.zone for c in candidates})
        recorded = dict(zip(
            zones,
            await asyncio.gather(*(client.preempted_instances(project, z) for z in zones)),
            strict=True,
        ))

        events: list[FleetEvent] = []
        unconfirmed: list[Computer] = []
        for computer in candidates:
            if computer.name in recorded[computer.node.zone]:
                events.append(NodePreempted(
                    name=computer.name, zone=computer.node.zone, reason="preempted by provider",
                ))
            else:
                unconfirmed.append(computer)

        states = await asyncio.gather(
            *(client.get_instance(project, c.node.zone, c.name) for c in unconfirmed)
        )
        for computer, state in zip(unconfirmed, states, strict=True):
            if state is None:
                reason = "instance no longer exists"
            elif state.terminal:
                reason = f"instance is {state.status}"
            else:
                continue
            events.append(NodePreempted(name=computer.name, zone=computer.node.zone, reason=reason))

        return events

    return check


class PreemptionHandler:
    """Event consumer that reacts to NodePreempted events.

    The Computer is always flagged first. Then, depending on the policy:
    - replace: terminate the instance, provision one from the same configuration
    - release: terminate the instance and deregister the node
    - ignore: nothing else
    """

    def __init__(
        self,
        config: Preemption,
        registry: NodeRegistry,
        provision: Provision,
        terminate: Terminate,
    ) -> None:
        self.config = config
        self.registry = registry
        self.provision = provision
        self.terminate = terminate
        self._tasks: set[asyncio.Task[None]] = set()

    def __call__(self, event: FleetEvent) -> None:
        match event:
            case NodePreempted(name=name, reason=reason):
                self._handle(name, reason)

    def _handle(self, name: str, reason: str) -> None:
        computer = self.registry.computer(name)
        if computer is None or not computer.mark_preempted(reason):
            return
        computer.set_offline(f"preempted: {reason}")
        log.warning("Node {name} preempted: {reason}", name=name, reason=reason)

        match self.config.policy:
            case "replace":
                self._spawn(self._replace(computer, reason))
            case "release":
                self._spawn(self._release(name))
            case "ignore":
                log.info("Ignoring preemption of {name} (policy=ignore)", name=name)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _release(self, name: str) -> None:
        try:
            await self.terminate(name)
        except Exception as e:
            log.warning(
                "Failed to terminate preempted node {name}, it stays registered: {err}",
                name=name, err=e,
            )

    async def _replace(self, computer: Computer, reason: str) -> None:
        name = computer.name
        await self._release(name)

        for attempt in range(1, self.config.max_retries + 1):
            try:
                log.info(
                    "Replacing {name} (attempt {attempt}/{max})",
                    name=name, attempt=attempt, max=self.config.max_retries,
                )
                replacement = await self.provision(computer.node.configuration)
            except ProvisioningError as e:
                log.warning("Replace attempt {attempt} failed: {err}", attempt=attempt, err=e)
                if attempt < self.config.max_retries:
                    await asyncio.sleep(self.config.retry_delay)
                continue

            emit_safely(NodeReplaced(old_name=name, new_name=replacement.name, attempt=attempt))
            log.info("Replaced {name} with {new}", name=name, new=replacement.name)
            return

        error = PreemptionError(name, reason, attempts=self.config.max_retries)
        log.error("{err}", err=error)
        emit_safely(Error(message=str(error), name=name))

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class PreemptionWatcher:
    """Monitor plus handler for one cloud's preemptible nodes."""

    def __init__(
        self,
        *,
        client: ComputeClient,
        project: str,
        registry: NodeRegistry,
        cloud_name: str,
        config: Preemption,
        provision: Provision,
        terminate: Terminate,
    ) -> None:
        self.handler = PreemptionHandler(config, registry, provision, terminate)
        self.monitor: Monitor = monitor(
            name=f"preemption-{cloud_name}",
            interval=config.monitor_interval,
            check=preemption_check(client, project, registry, cloud_name),
            emit=self._dispatch,
        )

    def _dispatch(self, event: FleetEvent) -> None:
        self.handler(event)
        emit(event)

    @property
    def running(self) -> bool:
        return self.monitor.running

    def start(self) -> None:
        self.monitor.start()

    async def check_now(self) -> None:
        """Run one detection pass immediately."""
        await self.monitor.tick()

    async def shutdown(self) -> None:
        await self.monitor.shutdown()
        await self.handler.shutdown()


__all__ = ["PreemptionHandler", "PreemptionWatcher", "preemption_check"]
