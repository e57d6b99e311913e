from __future__ import annotations

import pytest
import pytest_asyncio

from buildfleet import InstanceConfiguration
from tests.fakes import ZONE, FakeComputeClient, make_cloud


@pytest.fixture
def client() -> FakeComputeClient:
    return FakeComputeClient()


@pytest.fixture
def configuration() -> InstanceConfiguration:
    return InstanceConfiguration(
        name_prefix="agent",
        zone=ZONE,
        labels="linux docker",
        preemptible=True,
        google_labels={"suite": "unit"},
        launch_timeout=5.0,
    )


@pytest_asyncio.fixture
async def cloud(client: FakeComputeClient, configuration: InstanceConfiguration):
    async with make_cloud(client, configuration) as c:
        yield c
