from __future__ import annotations

import pytest
from fakes import FakeComputeClient, make_cloud
from google.api_core.exceptions import ServiceUnavailable

from stratus.core.exceptions import CapacityQueryError
from stratus.reconciler import headroom, instances_by_configuration, live_instances


class TestLiveInstances:
    @pytest.mark.asyncio
    async def test_counts_only_alive_states(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, instance_id="mine")
        for i, status in enumerate(
            ["PROVISIONING", "STAGING", "RUNNING", "STOPPING", "TERMINATED", "SUSPENDED"]
        ):
            client.add_foreign(f"w{i}", "mine", status=status)

        live = await live_instances(cloud)

        assert sorted(i.status for i in live) == ["PROVISIONING", "RUNNING", "STAGING"]

    @pytest.mark.asyncio
    async def test_ignores_other_clouds(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, instance_id="mine")
        client.add_foreign("a", "mine")
        client.add_foreign("b", "someone-else")

        assert [i.name for i in await live_instances(cloud)] == ["a"]

    @pytest.mark.asyncio
    async def test_listing_failure_is_capacity_error(self):
        client = FakeComputeClient()
        client.list_error = ServiceUnavailable("backend down")
        with pytest.raises(CapacityQueryError, match="backend down"):
            await live_instances(make_cloud(client))


class TestHeadroom:
    @pytest.mark.asyncio
    async def test_cap_minus_live(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, instance_cap=3, instance_id="mine")
        client.add_foreign("a", "mine")
        client.add_foreign("b", "mine", status="TERMINATED")
        assert await headroom(cloud) == 2

    @pytest.mark.asyncio
    async def test_can_go_negative(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, instance_cap=1, instance_id="mine")
        client.add_foreign("a", "mine")
        client.add_foreign("b", "mine")
        assert await headroom(cloud) == -1


class TestGrouping:
    @pytest.mark.asyncio
    async def test_groups_by_configuration_label(self):
        client = FakeComputeClient()
        cloud = make_cloud(client, instance_id="mine")
        client.add_foreign("l1", "mine", config="linux")
        client.add_foreign("l2", "mine", config="linux")
        client.add_foreign("w1", "mine", config="windows")

        grouped = await instances_by_configuration(cloud)

        assert {k: sorted(i.name for i in v) for k, v in grouped.items()} == {
            "linux": ["l1", "l2"],
            "windows": ["w1"],
        }
