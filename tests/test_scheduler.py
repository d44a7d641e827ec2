from __future__ import annotations

from fakes import FakeComputeClient, FakeRemoteChannel, FakeSession, make_cloud, make_config

from stratus.bootstrap.transport import AttachedChannel
from stratus.node import WorkerNode
from stratus.scheduler import NodeRegistry


def _node(name: str = "linux-1") -> WorkerNode:
    config = make_config()
    return WorkerNode(name, config.zone, "op", config, make_cloud(FakeComputeClient(), config))


def _channel() -> tuple[AttachedChannel, FakeRemoteChannel, FakeSession]:
    remote = FakeRemoteChannel("10.0.0.2")
    session = FakeSession()
    return AttachedChannel(remote, session), remote, session


class TestNodeRegistry:
    def test_add_and_remove(self):
        registry = NodeRegistry()
        node = _node()

        registry.add_node(node)
        assert registry.nodes == [node]

        registry.remove_node(node)
        assert registry.nodes == []

    def test_remove_unknown_node_is_noop(self):
        NodeRegistry().remove_node(_node())

    def test_attach_and_offline(self):
        registry = NodeRegistry()
        node = _node()
        channel, remote, session = _channel()
        registry.add_node(node)

        registry.attach(node, channel)
        assert registry.is_attached(node)

        channel.close()
        assert not registry.is_attached(node)
        assert session.closed and remote.closed
        assert registry.nodes == [node]

    def test_remove_closes_channel(self):
        registry = NodeRegistry()
        node = _node()
        channel, remote, _ = _channel()
        registry.add_node(node)
        registry.attach(node, channel)

        registry.remove_node(node)

        assert channel.closed and remote.closed
        assert not registry.is_attached(node)

    def test_payload(self):
        assert NodeRegistry(b"jar").agent_payload() == b"jar"
