import pytest

from kubestrap.config.models import ClusterOptions, ClusterSpec, NodeSpec


@pytest.fixture
def knodes():
    """Three stacked control-plane/etcd/worker nodes, the usual lab layout."""
    return [
        NodeSpec(
            hostname=f"knode0{i}",
            management_address=f"10.255.0.5{i}",
            roles=["control-plane", "etcd", "worker"],
        )
        for i in (1, 2, 3)
    ]


@pytest.fixture
def cluster(knodes):
    return ClusterSpec(nodes=tuple(knodes), options=ClusterOptions(name="lab"))
