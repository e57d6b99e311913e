"""Realized build agents and their runtime state.

A ComputeNode is the configured side of an agent and never changes once
registered. Its Computer carries what is observed at runtime: whether it
is online and whether the provider preempted it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from loguru import logger

from buildfleet.api.model import InstanceConfiguration, NodeMode
from buildfleet.wait import await_condition

log = logger.bind(component="node")


@dataclass(frozen=True, slots=True)
class ComputeNode:
    """A registered build agent backed by a Compute Engine instance."""

    name: str
    zone: str
    num_executors: int
    labels: frozenset[str]
    mode: NodeMode
    preemptible: bool
    configuration: InstanceConfiguration
    cloud_name: str

    @classmethod
    def from_configuration(
        cls, name: str, configuration: InstanceConfiguration, cloud_name: str,
    ) -> ComputeNode:
        return cls(
            name=name,
            zone=configuration.zone,
            num_executors=configuration.num_executors,
            labels=configuration.labels,
            mode=configuration.mode,
            preemptible=configuration.preemptible,
            configuration=configuration,
            cloud_name=cloud_name,
        )


class Computer:
    """Runtime tracker of a ComputeNode.

    ``preempted`` only ever goes from False to True within the lifetime of
    a Computer. It is a plain read: the preemption watcher pushes state in,
    callers poll it with ``wait_preempted`` or ``await_condition``.
    """

    __slots__ = ("_node", "_online", "_offline_cause", "_preempted",
                 "_preemption_reason", "_connect_time", "_terminating")

    def __init__(self, node: ComputeNode) -> None:
        self._node = node
        self._online = True
        self._offline_cause: str | None = None
        self._preempted = False
        self._preemption_reason: str | None = None
        self._connect_time = time.time()
        self._terminating = False

    def __repr__(self) -> str:
        return (
            f"Computer(name={self.name!r}, online={self._online}, "
            f"preemptible={self.preemptible}, preempted={self._preempted})"
        )

    @property
    def node(self) -> ComputeNode:
        return self._node

    @property
    def name(self) -> str:
        return self._node.name

    @property
    def preemptible(self) -> bool:
        return self._node.preemptible

    @property
    def preempted(self) -> bool:
        return self._preempted

    @property
    def preemption_reason(self) -> str | None:
        return self._preemption_reason

    @property
    def online(self) -> bool:
        return self._online

    @property
    def offline_cause(self) -> str | None:
        return self._offline_cause

    @property
    def connect_time(self) -> float:
        return self._connect_time

    @property
    def terminating(self) -> bool:
        """True while a delete of the instance is in flight."""
        return self._terminating

    def mark_terminating(self, terminating: bool = True) -> None:
        self._terminating = terminating

    def mark_preempted(self, reason: str) -> bool:
        """Record a preemption. Returns False if it was already recorded."""
        if self._preempted:
            return False
        self._preempted = True
        self._preemption_reason = reason
        log.info("Computer {name} preempted: {reason}", name=self.name, reason=reason)
        return True

    def set_offline(self, cause: str) -> None:
        if self._online:
            self._online = False
            self._offline_cause = cause

    async def wait_preempted(self, timeout: float, interval: float = 1.0) -> None:
        """Block until this computer is observed preempted.

        Raises:
            TimeoutError: If the flag is still False after ``timeout`` seconds.
        """
        await await_condition(
            lambda: self._preempted,
            timeout=timeout,
            interval=interval,
            description=f"preemption of {self.name}",
        )


__all__ = ["ComputeNode", "Computer"]
