"""In-memory registry of the nodes a cloud has brought up.

Stands in for the build master's node list: provisioning adds to it,
termination removes from it, and callers look nodes up by name.
"""

from __future__ import annotations

from collections.abc import Iterator

from loguru import logger

from buildfleet.node import ComputeNode, Computer

log = logger.bind(component="registry")


class NodeRegistry:
    def __init__(self) -> None:
        self._computers: dict[str, Computer] = {}

    def __len__(self) -> int:
        return len(self._computers)

    def __contains__(self, name: object) -> bool:
        return name in self._computers

    def __iter__(self) -> Iterator[ComputeNode]:
        return (c.node for c in list(self._computers.values()))

    def add(self, node: ComputeNode) -> Computer:
        """Register a node and return its freshly created Computer."""
        if node.name in self._computers:
            raise ValueError(f"Node {node.name} is already registered")
        computer = Computer(node)
        self._computers[node.name] = computer
        log.debug("Registered node {name}", name=node.name)
        return computer

    def remove(self, name: str) -> Computer | None:
        computer = self._computers.pop(name, None)
        if computer is not None:
            log.debug("Deregistered node {name}", name=name)
        return computer

    def get_node(self, name: str) -> ComputeNode | None:
        computer = self._computers.get(name)
        return computer.node if computer else None

    def computer(self, name: str) -> Computer | None:
        return self._computers.get(name)

    def computers(self, *, cloud_name: str | None = None) -> tuple[Computer, ...]:
        return tuple(
            c for c in self._computers.values()
            if cloud_name is None or c.node.cloud_name == cloud_name
        )


__all__ = ["NodeRegistry"]
