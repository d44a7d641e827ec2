from __future__ import annotations

import pytest
from fakes import FakeClock, FakeComputeClient, make_cloud, make_config

from stratus.cloud import Cloud


@pytest.fixture
def client() -> FakeComputeClient:
    return FakeComputeClient()


@pytest.fixture
def cloud(client: FakeComputeClient) -> Cloud:
    return make_cloud(client, make_config())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
