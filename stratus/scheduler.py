"""The host job scheduler's side of the contract.

Stratus only adds and removes worker nodes and hands over attached agent
channels; executor bookkeeping stays with the scheduler. ``NodeRegistry``
is an in-memory implementation for embedding and tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from loguru import logger

if TYPE_CHECKING:
    from stratus.bootstrap.transport import AttachedChannel
    from stratus.node import WorkerNode

log = logger.bind(component="scheduler")


class JobScheduler(Protocol):
    def add_node(self, node: WorkerNode) -> None: ...

    def remove_node(self, node: WorkerNode) -> None: ...

    def attach(self, node: WorkerNode, channel: AttachedChannel) -> None: ...

    def agent_payload(self) -> bytes:
        """The agent archive copied to every worker."""
        ...


class NodeRegistry:
    """In-memory ``JobScheduler``."""

    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload
        self._nodes: dict[str, WorkerNode] = {}
        self._channels: dict[str, AttachedChannel] = {}

    @property
    def nodes(self) -> list[WorkerNode]:
        return list(self._nodes.values())

    def is_attached(self, node: WorkerNode) -> bool:
        return node.name in self._channels

    def add_node(self, node: WorkerNode) -> None:
        self._nodes[node.name] = node
        log.debug("Added node {name}", name=node.name)

    def remove_node(self, node: WorkerNode) -> None:
        self._nodes.pop(node.name, None)
        if (channel := self._channels.pop(node.name, None)) is not None:
            channel.close()
        log.debug("Removed node {name}", name=node.name)

    def attach(self, node: WorkerNode, channel: AttachedChannel) -> None:
        self._channels[node.name] = channel
        channel.add_close_listener(lambda _: self._detached(node))
        log.info("Node {name} attached", name=node.name)

    def _detached(self, node: WorkerNode) -> None:
        if self._channels.pop(node.name, None) is not None:
            log.info("Node {name} went offline", name=node.name)

    def agent_payload(self) -> bytes:
        return self._payload
