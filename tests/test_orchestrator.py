import pytest

from cks_operator.cloud.cks import CKS_CLUSTER_TYPE
from cks_operator.errors import AmbiguousError, MultiError, NotFoundError, RemoteError
from cks_operator.orchestrator import destroy_cluster_networking, ensure_cluster_networking

from fakes import make_cluster

CREATES = ("create_network", "associate_ip_address", "create_load_balancer_rule", "create_egress_firewall_rule")


def test_converges_empty_cloud_in_order(cloud, cluster):
    ensure_cluster_networking(cloud, cluster)

    creates = [name for name in cloud.names() if name in CREATES]
    assert creates == list(CREATES)
    assert cluster.status.ready is True
    assert cluster.status.zone_id == "zone-1"
    assert cluster.status.network_id
    assert cluster.status.public_ip_id == "ip-1"
    assert cluster.status.lb_rule_id
    assert cluster.spec.control_plane_endpoint.host == "203.0.113.10"


def test_second_pass_creates_nothing(cloud, cluster):
    ensure_cluster_networking(cloud, cluster)
    recorded = cluster.status.model_dump()
    cloud.calls.clear()

    ensure_cluster_networking(cloud, cluster)

    assert [name for name in cloud.names() if name in CREATES[:3]] == []
    assert cluster.status.model_dump() == recorded


def test_network_failure_is_aggregated_and_stops_the_pass(cloud, cluster):
    cloud.errors["list_networks"] = RemoteError("API unavailable")

    with pytest.raises(MultiError) as exc_info:
        ensure_cluster_networking(cloud, cluster)

    assert len(exc_info.value) == 2
    assert cloud.called("associate_ip_address") == []
    assert cluster.status.ready is False


def test_single_network_error_is_still_reported_as_aggregate(cloud, cluster):
    cloud.offerings.append(dict(cloud.offerings[0], id="offering-2"))

    with pytest.raises(MultiError) as exc_info:
        ensure_cluster_networking(cloud, cluster)

    assert exc_info.value.has(AmbiguousError)


def test_failure_after_network_fails_fast_and_keeps_confirmed_fields(cloud, cluster):
    cloud.errors["create_egress_firewall_rule"] = RemoteError("Network is not in Implemented state")

    with pytest.raises(RemoteError) as exc_info:
        ensure_cluster_networking(cloud, cluster)

    assert not isinstance(exc_info.value, MultiError)
    assert cluster.status.network_id
    assert cluster.status.public_ip_id == "ip-1"
    assert cluster.status.lb_rule_id
    assert cluster.status.ready is False


def test_retry_resumes_after_partial_failure(cloud, cluster):
    cloud.errors["create_load_balancer_rule"] = RemoteError("temporarily unavailable")
    with pytest.raises(RemoteError):
        ensure_cluster_networking(cloud, cluster)

    del cloud.errors["create_load_balancer_rule"]
    ensure_cluster_networking(cloud, cluster)

    assert len(cloud.called("create_network")) == 1
    assert len(cloud.called("associate_ip_address")) == 1
    assert cluster.status.ready is True


def test_recorded_network_is_never_replaced(cloud, cluster):
    cloud.networks = [{"id": "net-new", "name": "capi-net", "type": "Isolated"}]
    cluster.status.network_id = "net-old"

    with pytest.raises(MultiError) as exc_info:
        ensure_cluster_networking(cloud, cluster)
    assert exc_info.value.only(NotFoundError)
    assert cluster.status.network_id == "net-old"
    assert cloud.called("create_network") == []


def test_lagging_listings_never_duplicate_resources(cloud, cluster):
    ensure_cluster_networking(cloud, cluster)
    recorded = cluster.status.model_dump()
    cloud.listing_lag = True

    with pytest.raises(NotFoundError):
        ensure_cluster_networking(cloud, cluster)

    assert len(cloud.called("create_network")) == 1
    assert len(cloud.called("create_load_balancer_rule")) == 1
    assert cluster.status.model_dump() == recorded

    cloud.listing_lag = False
    ensure_cluster_networking(cloud, cluster)
    assert len(cloud.called("create_load_balancer_rule")) == 1
    assert cluster.status.ready is True


def test_cks_cluster_registered_when_syncing(cloud):
    cluster = make_cluster(syncWithCks=True)
    ensure_cluster_networking(cloud, cluster)

    (params,) = cloud.called("create_kubernetes_cluster")
    assert params["clustertype"] == CKS_CLUSTER_TYPE
    assert params["networkid"] == cluster.status.network_id
    assert cluster.status.cks_cluster_id

    ensure_cluster_networking(cloud, cluster)
    assert len(cloud.called("create_kubernetes_cluster")) == 1


def test_cks_untouched_without_sync(cloud, cluster):
    ensure_cluster_networking(cloud, cluster)
    assert cloud.called("list_kubernetes_clusters") == []
    assert cluster.status.cks_cluster_id == ""


def test_teardown_deletes_cks_cluster_before_network(cloud):
    cluster = make_cluster(syncWithCks=True)
    ensure_cluster_networking(cloud, cluster)
    cloud.calls.clear()

    destroy_cluster_networking(cloud, cluster)

    assert cloud.names() == ["delete_kubernetes_cluster", "delete_network"]
    assert cloud.called("delete_network") == [{"id": cluster.status.network_id}]
    assert cloud.networks == []
    assert cluster.status.ready is False


def test_teardown_without_recorded_network_is_a_no_op(cloud, cluster):
    destroy_cluster_networking(cloud, cluster)
    assert cloud.calls == []
