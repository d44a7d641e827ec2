from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fakes import FakeClock, FakeComputeClient, FakeConnector, make_cloud, make_config
from google.api_core.exceptions import Forbidden, ServiceUnavailable

from stratus.controller import ProvisioningController
from stratus.core.exceptions import BootstrapError, NoMatchingConfigurationError
from stratus.scheduler import NodeRegistry


def _ready_client() -> FakeComputeClient:
    client = FakeComputeClient()
    client.insert_status = "RUNNING"
    client.insert_address = "10.0.0.5"
    return client


def _controller(cloud: Any, clock: FakeClock, **options: Any) -> tuple[ProvisioningController, NodeRegistry]:
    registry = NodeRegistry(payload=b"agent-bytes")
    bootstrap_options = {"connect": FakeConnector(), "sleep": clock.sleep, "clock": clock, **options}
    return ProvisioningController(cloud, registry, bootstrap_options=bootstrap_options), registry


class TestProvision:
    @pytest.mark.asyncio
    async def test_plans_enough_nodes_for_demand(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(num_executors=2))
        controller, registry = _controller(cloud, clock)

        planned = await controller.provision(None, excess_workload=3)

        assert len(planned) == 2
        assert [p.num_executors for p in planned] == [2, 2]
        assert await asyncio.gather(*(p.attached for p in planned)) == [True, True]
        assert all(registry.is_attached(p.node) for p in planned)
        assert len(registry.nodes) == 2

    @pytest.mark.asyncio
    async def test_stops_at_instance_cap(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(), instance_cap=2)
        controller, _ = _controller(cloud, clock)

        planned = await controller.provision(None, excess_workload=5)

        assert len(planned) == 2
        assert len(client.inserted) == 2
        await controller.wait_pending()

    @pytest.mark.asyncio
    async def test_existing_instances_count_against_cap(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(), instance_cap=2, instance_id="mine")
        client.add_foreign("old-1", "mine")
        client.add_foreign("old-2", "mine")
        controller, _ = _controller(cloud, clock)

        assert await controller.provision(None, excess_workload=1) == []
        assert client.inserted == []

    @pytest.mark.asyncio
    async def test_concurrent_calls_respect_cap_of_one(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(), instance_cap=1)
        controller, _ = _controller(cloud, clock)

        first, second = await asyncio.gather(
            controller.provision(None, excess_workload=1),
            controller.provision(None, excess_workload=1),
        )

        assert len(first) + len(second) == 1
        assert len(client.inserted) == 1
        await controller.wait_pending()

    @pytest.mark.asyncio
    async def test_no_matching_configuration_returns_nothing(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(label_string="linux"))
        controller, _ = _controller(cloud, clock)

        assert not controller.can_provision("windows")
        assert await controller.provision("windows", excess_workload=1) == []
        assert client.list_calls == 0

    @pytest.mark.asyncio
    async def test_insert_failure_returns_partial_plan(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config())
        controller, _ = _controller(cloud, clock)

        original = client.insert_instance

        async def fail_second(zone: str, instance: Any, template: str = "") -> Any:
            if client.inserted:
                raise Forbidden("quota exceeded")
            return await original(zone, instance, template)

        client.insert_instance = fail_second  # type: ignore[method-assign]

        planned = await controller.provision(None, excess_workload=3)

        assert len(planned) == 1
        await controller.wait_pending()

    @pytest.mark.asyncio
    async def test_capacity_query_failure_aborts_call(self, clock: FakeClock):
        client = _ready_client()
        client.list_error = ServiceUnavailable("try later")
        controller, _ = _controller(make_cloud(client, make_config()), clock)

        assert await controller.provision(None, excess_workload=2) == []
        assert client.inserted == []

    @pytest.mark.asyncio
    async def test_failed_insert_operation_aborts_call(self, clock: FakeClock):
        client = _ready_client()
        client.insert_failure = (503, "ZONE_RESOURCE_POOL_EXHAUSTED")
        controller, registry = _controller(make_cloud(client, make_config()), clock)

        planned = await controller.provision(None, excess_workload=3)

        assert planned == []
        assert registry.nodes == []
        assert len(client.inserted) == 1


class TestAttach:
    @pytest.mark.asyncio
    async def test_zero_launch_timeout_waits_indefinitely(self, clock: FakeClock):
        client = FakeComputeClient()
        cloud = make_cloud(client, make_config(launch_timeout=0))

        async def sleep(delay: float) -> None:
            await clock.sleep(delay)
            # The address shows up long after the default launch timeout.
            if clock.now >= 1000:
                for name in list(client.instances):
                    client.set_status(name, "RUNNING", internal="10.0.0.9")

        controller, registry = _controller(cloud, clock, sleep=sleep)

        [planned] = await controller.provision(None, excess_workload=1)

        assert await planned.attached is True
        assert registry.is_attached(planned.node)
        assert clock.now >= 1000

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timed_out_attach_is_abandoned_not_deleted(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, make_config(launch_timeout=1))

        async def short_sleep(delay: float) -> None:
            await asyncio.sleep(0.01)

        registry = NodeRegistry()
        controller = ProvisioningController(
            cloud, registry,
            bootstrap_options={"connect": FakeConnector(), "sleep": short_sleep},
        )

        [planned] = await controller.provision(None, excess_workload=1)

        assert await planned.attached is False
        assert client.deleted == []
        assert not registry.is_attached(planned.node)
        with pytest.raises(BootstrapError):
            await planned.node.connect()

    @pytest.mark.asyncio
    async def test_failed_bootstrap_reports_false(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config())
        controller, registry = _controller(
            cloud, clock, connect=FakeConnector(exec_codes={"java": 127}),
        )

        [planned] = await controller.provision(None, excess_workload=1)

        assert await planned.attached is False
        assert not registry.is_attached(planned.node)


class TestProvisionConfiguration:
    @pytest.mark.asyncio
    async def test_provisions_named_configuration(self, clock: FakeClock):
        client = _ready_client()
        linux = make_config("linux", label_string="linux")
        gpu = make_config("gpu", description="GPU builders", label_string="gpu")
        controller, _ = _controller(make_cloud(client, linux, gpu), clock)

        planned = await controller.provision_configuration("GPU builders")

        assert planned is not None
        assert planned.node.config is gpu
        assert await planned.attached is True

    @pytest.mark.asyncio
    async def test_unknown_description_raises(self, clock: FakeClock):
        controller, _ = _controller(make_cloud(_ready_client()), clock)
        with pytest.raises(NoMatchingConfigurationError):
            await controller.provision_configuration("nope")

    @pytest.mark.asyncio
    async def test_full_cloud_returns_none(self, clock: FakeClock):
        client = _ready_client()
        cloud = make_cloud(client, make_config(), instance_cap=0)
        controller, _ = _controller(cloud, clock)

        assert await controller.provision_configuration("linux workers") is None
