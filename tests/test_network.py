import pytest

from cks_operator.cloud.network import (
    K8S_DEFAULT_API_PORT,
    LB_ALGORITHM,
    LB_RULE_NAME,
    IpAllocation,
    assign_vm_to_load_balancer_rule,
    associate_public_ip_address,
    get_or_create_load_balancer_rule,
    get_or_create_network,
    ip_allocation,
    open_firewall_rules,
    resolve_domain,
    resolve_load_balancer_rule_details,
    resolve_network,
    resolve_zone,
)
from cks_operator.errors import AmbiguousError, MultiError, NotFoundError, RemoteError

from fakes import make_cluster


# ---------------------------------------------------------------------------
# Zone & domain
# ---------------------------------------------------------------------------

def test_zone_resolved_by_name(cloud, cluster):
    resolve_zone(cloud, cluster)
    assert cluster.status.zone_id == "zone-1"


def test_zone_id_taken_as_is(cloud):
    cluster = make_cluster(failureDomains=[{"name": "fd1", "zone": {"id": "zone-42"}}])
    resolve_zone(cloud, cluster)
    assert cluster.status.zone_id == "zone-42"
    assert cloud.called("list_zones") == []


def test_duplicate_zone_names_are_ambiguous(cloud, cluster):
    cloud.zones.append({"id": "zone-2", "name": "zone1"})
    with pytest.raises(AmbiguousError):
        resolve_zone(cloud, cluster)
    assert cluster.status.zone_id == ""


def test_domain_resolved_by_path(cloud):
    cloud.domains = [
        {"id": "dom-1", "name": "team", "path": "ROOT/team"},
        {"id": "dom-2", "name": "team", "path": "ROOT/other/team"},
    ]
    cluster = make_cluster(domain="ROOT/team")
    resolve_domain(cloud, cluster)
    assert cluster.status.domain_id == "dom-1"


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

def test_get_or_create_network_is_idempotent(cloud, cluster):
    resolve_zone(cloud, cluster)

    get_or_create_network(cloud, cluster)
    first_id = cluster.status.network_id
    get_or_create_network(cloud, cluster)

    assert len(cloud.called("create_network")) == 1
    assert cluster.status.network_id == first_id
    assert cluster.status.network_type == "Isolated"


def test_network_created_with_default_offering_in_zone(cloud, cluster):
    resolve_zone(cloud, cluster)
    get_or_create_network(cloud, cluster)

    (params,) = cloud.called("create_network")
    assert params["name"] == "capi-net"
    assert params["displaytext"] == "capi-net"
    assert params["networkofferingid"] == "offering-1"
    assert params["zoneid"] == "zone-1"


def test_existing_network_is_not_recreated(cloud, cluster):
    cloud.networks = [{"id": "net-existing", "name": "capi-net", "type": "Shared"}]
    get_or_create_network(cloud, cluster)
    assert cloud.called("create_network") == []
    assert cluster.status.network_id == "net-existing"
    assert cluster.status.network_type == "Shared"


def test_network_found_by_id(cloud):
    cloud.networks = [{"id": "6f9a1c", "name": "some-other-name", "type": "Isolated"}]
    cluster = make_cluster(network="6f9a1c")
    resolve_network(cloud, cluster)
    assert cluster.status.network_id == "6f9a1c"


def test_ambiguous_network_name_writes_nothing(cloud, cluster):
    cloud.networks = [
        {"id": "net-a", "name": "capi-net", "type": "Isolated"},
        {"id": "net-b", "name": "capi-net", "type": "Isolated"},
    ]
    with pytest.raises(AmbiguousError):
        resolve_network(cloud, cluster)
    with pytest.raises(AmbiguousError):
        get_or_create_network(cloud, cluster)

    assert cluster.status.network_id == ""
    assert cluster.status.network_type == ""
    assert cloud.called("create_network") == []


def test_missing_network_reports_both_lookups(cloud, cluster):
    with pytest.raises(MultiError) as exc_info:
        resolve_network(cloud, cluster)
    assert len(exc_info.value) == 2
    assert exc_info.value.only(NotFoundError)


def test_remote_failure_during_lookup_is_not_mistaken_for_absence(cloud, cluster):
    cloud.errors["list_networks"] = RemoteError("API unavailable")
    with pytest.raises(MultiError) as exc_info:
        get_or_create_network(cloud, cluster)
    assert len(exc_info.value) == 2
    assert "API unavailable" in str(exc_info.value)
    assert cloud.called("create_network") == []


def test_recorded_network_resolved_by_id_while_search_lags(cloud, cluster):
    resolve_zone(cloud, cluster)
    get_or_create_network(cloud, cluster)
    cloud.listing_lag = True

    get_or_create_network(cloud, cluster)

    assert len(cloud.called("create_network")) == 1
    assert cloud.called("list_networks")[-1]["id"] == cluster.status.network_id


def test_recorded_network_not_yet_visible_is_retried_not_recreated(cloud, cluster):
    cloud.networks = [{"id": "net-other", "name": "capi-net", "type": "Isolated"}]
    cluster.status.network_id = "net-1"

    with pytest.raises(NotFoundError):
        get_or_create_network(cloud, cluster)

    assert cloud.called("create_network") == []
    assert cluster.status.network_id == "net-1"


def test_network_offering_must_be_unique(cloud, cluster):
    cloud.offerings.append(dict(cloud.offerings[0], id="offering-2"))
    with pytest.raises(AmbiguousError):
        get_or_create_network(cloud, cluster)
    assert cloud.called("create_network") == []


# ---------------------------------------------------------------------------
# Public IP
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "allocated, network, expected",
    [
        ("", "", IpAllocation.UNALLOCATED),
        ("0001-01-01T00:00:00+0000", "", IpAllocation.UNALLOCATED),
        ("2024-05-01T10:00:00+0000", "net-1", IpAllocation.ALLOCATED_ASSOCIATED),
        ("2024-05-01T10:00:00+0000", "net-other", IpAllocation.ALLOCATED_UNASSOCIATED),
    ],
)
def test_ip_allocation(allocated, network, expected):
    address = {"allocated": allocated, "associatednetworkid": network}
    assert ip_allocation(address, "net-1") is expected


def _networked(cloud, cluster):
    cloud.networks = [{"id": "net-1", "name": "capi-net", "type": "Isolated"}]
    get_or_create_network(cloud, cluster)
    return cluster


def test_unallocated_ip_is_associated_once(cloud, cluster):
    _networked(cloud, cluster)
    associate_public_ip_address(cloud, cluster)

    (params,) = cloud.called("associate_ip_address")
    assert params["networkid"] == "net-1"
    assert params["ipaddress"] == "203.0.113.10"
    assert cluster.status.public_ip_id == "ip-1"
    assert cluster.spec.control_plane_endpoint.host == "203.0.113.10"


def test_ip_already_on_cluster_network_is_left_alone(cloud, cluster):
    _networked(cloud, cluster)
    cloud.public_ips[0].update(allocated="2024-05-01T10:00:00+0000", associatednetworkid="net-1")

    associate_public_ip_address(cloud, cluster)

    assert cloud.called("associate_ip_address") == []
    assert cluster.status.public_ip_id == "ip-1"


def test_ip_on_another_network_is_associated(cloud, cluster):
    _networked(cloud, cluster)
    cloud.public_ips[0].update(allocated="2024-05-01T10:00:00+0000", associatednetworkid="net-other")

    associate_public_ip_address(cloud, cluster)

    assert len(cloud.called("associate_ip_address")) == 1


def test_configured_endpoint_host_selects_the_ip(cloud):
    cloud.public_ips.append({"id": "ip-2", "ipaddress": "203.0.113.20", "allocated": "", "associatednetworkid": ""})
    cluster = _networked(cloud, make_cluster(controlPlaneEndpoint={"host": "203.0.113.20", "port": 6443}))

    associate_public_ip_address(cloud, cluster)

    assert cloud.called("list_public_ip_addresses")[0]["ipaddress"] == "203.0.113.20"
    assert cluster.status.public_ip_id == "ip-2"


def test_failed_association_records_nothing(cloud, cluster):
    _networked(cloud, cluster)
    cloud.errors["associate_ip_address"] = RemoteError("insufficient capacity")

    with pytest.raises(RemoteError):
        associate_public_ip_address(cloud, cluster)

    assert cluster.status.public_ip_id == ""
    assert cluster.spec.control_plane_endpoint.host == ""


def test_no_public_ip_is_not_found(cloud, cluster):
    cloud.public_ips = []
    _networked(cloud, cluster)
    with pytest.raises(NotFoundError):
        associate_public_ip_address(cloud, cluster)


# ---------------------------------------------------------------------------
# Load balancer
# ---------------------------------------------------------------------------

@pytest.fixture
def lb_rules(cloud):
    cloud.lb_rules = [
        {"id": "lb-7443", "publicipid": "ip-1", "publicport": "7443"},
        {"id": "lb-6443", "publicipid": "ip-1", "publicport": "6443"},
    ]


@pytest.mark.parametrize("port, expected", [(6443, "lb-6443"), (7443, "lb-7443"), (0, "lb-6443")])
def test_lb_rule_matched_by_public_port(cloud, lb_rules, port, expected):
    cluster = make_cluster(controlPlaneEndpoint={"host": "203.0.113.10", "port": port})
    cluster.status.public_ip_id = "ip-1"

    resolve_load_balancer_rule_details(cloud, cluster)

    assert cluster.status.lb_rule_id == expected


def test_no_matching_lb_rule_is_not_found(cloud, lb_rules):
    cluster = make_cluster(controlPlaneEndpoint={"host": "203.0.113.10", "port": 8443})
    cluster.status.public_ip_id = "ip-1"
    with pytest.raises(NotFoundError):
        resolve_load_balancer_rule_details(cloud, cluster)
    assert cluster.status.lb_rule_id == ""


def test_recorded_lb_rule_is_matched_by_id(cloud, lb_rules):
    cluster = make_cluster(controlPlaneEndpoint={"host": "203.0.113.10", "port": 6443})
    cluster.status.public_ip_id = "ip-1"
    cluster.status.lb_rule_id = "lb-7443"

    resolve_load_balancer_rule_details(cloud, cluster)

    assert cluster.status.lb_rule_id == "lb-7443"


def test_recorded_lb_rule_missing_from_listing_is_not_recreated(cloud, cluster):
    cluster.status.network_id = "net-1"
    cluster.status.public_ip_id = "ip-1"
    get_or_create_load_balancer_rule(cloud, cluster)
    cloud.listing_lag = True

    with pytest.raises(NotFoundError):
        get_or_create_load_balancer_rule(cloud, cluster)

    assert len(cloud.called("create_load_balancer_rule")) == 1


def test_lb_rule_created_when_missing(cloud, cluster):
    cluster.status.network_id = "net-1"
    cluster.status.public_ip_id = "ip-1"

    get_or_create_load_balancer_rule(cloud, cluster)
    get_or_create_load_balancer_rule(cloud, cluster)

    (params,) = cloud.called("create_load_balancer_rule")
    assert params["algorithm"] == LB_ALGORITHM
    assert params["name"] == LB_RULE_NAME
    assert params["publicport"] == K8S_DEFAULT_API_PORT
    assert params["privateport"] == K8S_DEFAULT_API_PORT
    assert cluster.status.lb_rule_id.startswith("lb-")


def test_lb_rule_uses_configured_port(cloud):
    cluster = make_cluster(controlPlaneEndpoint={"host": "203.0.113.10", "port": 7443})
    cluster.status.public_ip_id = "ip-1"
    get_or_create_load_balancer_rule(cloud, cluster)
    assert cloud.called("create_load_balancer_rule")[0]["publicport"] == 7443


def test_assigning_a_member_vm_is_a_no_op(cloud, cluster):
    cluster.status.lb_rule_id = "lb-1"

    assert assign_vm_to_load_balancer_rule(cloud, cluster, "vm-1") is True
    assert assign_vm_to_load_balancer_rule(cloud, cluster, "vm-1") is False

    assert len(cloud.called("assign_to_load_balancer_rule")) == 1
    assert cloud.lb_members["lb-1"] == ["vm-1"]


# ---------------------------------------------------------------------------
# Firewall
# ---------------------------------------------------------------------------

def test_existing_firewall_rule_counts_as_success(cloud, cluster):
    cluster.status.network_id = "net-1"
    open_firewall_rules(cloud, cluster)
    open_firewall_rules(cloud, cluster)
    assert len(cloud.firewall_rules) == 1


def test_other_firewall_errors_propagate_unchanged(cloud, cluster):
    cluster.status.network_id = "net-1"
    failure = RemoteError("Network net-1 is not in Implemented state")
    cloud.errors["create_egress_firewall_rule"] = failure

    with pytest.raises(RemoteError) as exc_info:
        open_firewall_rules(cloud, cluster)
    assert exc_info.value is failure
