"""Shared fixtures: an in-memory cloud and a ready cluster around it."""

import pytest

from models import ClusterContext, MachineStatus
from simulator import FakeOpenStackClient


@pytest.fixture
def cloud():
    """Cloud with one image, one flavor, a tenant network and an external network."""
    fake = FakeOpenStackClient()
    fake.add_image("img-a", image_id="image-a")
    fake.add_flavor("m1.small", flavor_id="flavor-small")
    fake.add_network("net-1", network_id="net-1", cidrs=["10.0.0.0/24"])
    fake.add_network("public", network_id="ext-net", external=True)
    return fake


@pytest.fixture
def cluster():
    return ClusterContext(
        cluster_name="c1",
        network_id="net-1",
        subnet_ids=("subnet-1",),
        external_network_id="ext-net",
    )


@pytest.fixture
def machine_spec():
    return {"clusterName": "c1", "image": {"name": "img-a"}, "flavor": "m1.small"}


@pytest.fixture
def status():
    return MachineStatus()


@pytest.fixture
def drive(cloud):
    """Run a reconcile step until it reports done, advancing the cloud between passes."""

    def run(step, max_passes=20):
        for passes in range(1, max_passes + 1):
            result = step()
            if result.done:
                return passes
            cloud.advance()
        raise AssertionError(f"not done after {max_passes} passes: {result.reason}")

    return run
