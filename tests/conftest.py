import pytest

from fakes import FakeCloud, InMemoryStateStore, make_cluster


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def cluster():
    return make_cluster()


@pytest.fixture
def ready_cluster(cloud, store):
    """A cluster whose networking has already converged, with CKS tracking on."""
    from cks_operator.orchestrator import ensure_cluster_networking

    converged = make_cluster(syncWithCks=True)
    ensure_cluster_networking(cloud, converged)
    store.put_cluster(converged)
    cloud.calls.clear()
    return converged
