"""
network.py
----------
Idempotent get-or-create / get-or-associate operations for the networking a
cluster needs: zone and domain scoping, the isolated network, the control-plane
public IP, its load-balancer rule and the egress firewall rule.

Every function reads and writes a :class:`~cks_operator.models.Cluster` in place.
A status field is only written after the remote call that justifies it has
returned, so an interrupted call never leaves a half-recorded resource behind.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import (
    AmbiguousError,
    CloudError,
    MultiError,
    NotFoundError,
    RemoteError,
    append_error,
    is_already_satisfied,
)
from ..models import Cluster, FailureDomain
from .client import RemoteResourceClient

logger = logging.getLogger(__name__)

NET_OFFERING = "DefaultIsolatedNetworkOfferingWithSourceNatService"
K8S_DEFAULT_API_PORT = 6443
LB_RULE_NAME = "Kubernetes_API_Server"
LB_ALGORITHM = "roundrobin"

# CloudStack's answer to a by-id lookup of an id it does not know.
MISSING_ID_MARKERS = ("does not exist", "incorrect long value format")

# Go-style zero time, which CloudStack reports for never-allocated addresses.
ZERO_TIME_PREFIX = "0001-01-01"


class IpAllocation(str, Enum):
    """Where a public IP stands relative to the cluster's network."""

    UNALLOCATED = "unallocated"
    ALLOCATED_UNASSOCIATED = "allocated-unassociated"
    ALLOCATED_ASSOCIATED = "allocated-associated"


def scope(cluster: Cluster) -> Dict[str, Any]:
    """Account/domain filter shared by most calls; empty values are dropped by the client."""
    return {"account": cluster.spec.account or None, "domainid": cluster.status.domain_id or None}


def is_missing_id(exc: BaseException) -> bool:
    return any(marker in str(exc) for marker in MISSING_ID_MARKERS)


def exactly_one(items: List[dict], what: str) -> dict:
    if not items:
        raise NotFoundError(f"No match found for {what}.")
    if len(items) > 1:
        raise AmbiguousError(f"Expected 1 {what}, but got {len(items)}.")
    return items[0]


# ---------------------------------------------------------------------------
# Zone & domain --------------------------------------------------------------
# ---------------------------------------------------------------------------

def zone_id_for(cloud: RemoteResourceClient, failure_domain: FailureDomain) -> str:
    """Return the zone id of *failure_domain*, looking the zone up by name if needed."""
    if failure_domain.zone.id:
        return failure_domain.zone.id
    name = failure_domain.zone.name
    zones = [zone for zone in cloud.list_zones(name=name) if zone.get("name") == name]
    return exactly_one(zones, f"zone with name {name}")["id"]


def resolve_zone(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Record the zone of the cluster's first failure domain."""
    if cluster.status.zone_id:
        return
    failure_domain = cluster.failure_domain()
    if failure_domain is None:
        raise CloudError(f"Cluster {cluster.name} declares no failure domains.")
    cluster.status.set_identity("zone_id", zone_id_for(cloud, failure_domain))


def resolve_domain(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Record the id of ``spec.domain`` (a name or a ``ROOT/...`` path), if one is set."""
    domain = cluster.spec.domain
    if not domain or cluster.status.domain_id:
        return
    leaf = domain.rsplit("/", 1)[-1]
    matches = [
        item for item in cloud.list_domains(name=leaf)
        if item.get("path") == domain or item.get("name") == domain
    ]
    cluster.status.set_identity("domain_id", exactly_one(matches, f"domain {domain}")["id"])


# ---------------------------------------------------------------------------
# Network --------------------------------------------------------------------
# ---------------------------------------------------------------------------

def _network_by_id(cloud: RemoteResourceClient, cluster: Cluster, network_id: str) -> dict:
    try:
        networks = cloud.list_networks(id=network_id, **scope(cluster))
    except RemoteError as exc:
        if is_missing_id(exc):
            raise NotFoundError(f"No match found for Network with UUID {network_id}.") from exc
        raise
    return exactly_one(networks, f"Network with UUID {network_id}")


def resolve_network(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Find the cluster's network and record its id and type.

    ``spec.network`` is tried as a name first and, failing that, as an id. When
    both lookups fail every cause is raised together in a :class:`MultiError`; a
    name that matches several networks raises :class:`AmbiguousError` at once.

    A network id already recorded in status is looked up by id only. If it is
    not visible yet a plain :class:`NotFoundError` is raised, which callers
    retry rather than create.
    """
    recorded = cluster.status.network_id
    if recorded:
        try:
            details = _network_by_id(cloud, cluster, recorded)
        except NotFoundError as exc:
            raise NotFoundError(f"Network {recorded} recorded in status is not visible yet: {exc}") from exc
        cluster.status.network_type = details.get("type", cluster.status.network_type)
        return

    name = cluster.spec.network
    network_id = name
    errors: Optional[MultiError] = None

    try:
        matches = [
            network for network in cloud.list_networks(keyword=name, **scope(cluster))
            if network.get("name") == name
        ]
        network_id = exactly_one(matches, f"Network with name {name}")["id"]
    except AmbiguousError:
        raise
    except CloudError as exc:
        logger.debug("Network name lookup for %s failed, trying it as an id: %s", name, exc)
        errors = append_error(errors, exc)

    try:
        details = _network_by_id(cloud, cluster, network_id)
    except CloudError as exc:
        raise append_error(errors, exc) from exc

    cluster.status.set_identity("network_id", details["id"])
    cluster.status.network_type = details.get("type", "")


def get_or_create_network(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Resolve the cluster's network, creating an isolated one if it does not exist."""
    try:
        resolve_network(cloud, cluster)
        logger.debug("Network %s already present as %s", cluster.spec.network, cluster.status.network_id)
        return
    except MultiError as exc:
        if not exc.only(NotFoundError):
            raise

    offerings = cloud.list_network_offerings(name=NET_OFFERING)
    if len(offerings) != 1:
        raise AmbiguousError(f"Expected 1 network offering named {NET_OFFERING}, but got {len(offerings)}.")

    network = cloud.create_network(
        name=cluster.spec.network,
        displaytext=cluster.spec.network,
        networkofferingid=offerings[0]["id"],
        zoneid=cluster.status.zone_id,
        **scope(cluster),
    )
    cluster.status.set_identity("network_id", network["id"])
    cluster.status.network_type = network.get("type", "")
    logger.info("Created network %s (%s)", cluster.spec.network, network["id"])


def destroy_network(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Delete the network recorded in status. Callers must have released its machines first."""
    network_id = cluster.status.network_id
    if not network_id:
        logger.debug("Cluster %s has no recorded network, nothing to delete", cluster.name)
        return
    cloud.delete_network(id=network_id)
    logger.info("Deleted network %s", network_id)


# ---------------------------------------------------------------------------
# Public IP ------------------------------------------------------------------
# ---------------------------------------------------------------------------

def _is_allocated(allocated: Optional[str]) -> bool:
    """``allocated`` is a timestamp: empty and zero-time values mean not allocated."""
    allocated = (allocated or "").strip()
    if not allocated or allocated.startswith(ZERO_TIME_PREFIX):
        return False
    digits = [char for char in allocated if char.isdigit()]
    if digits and all(char == "0" for char in digits):
        return False
    try:
        when = datetime.fromisoformat(allocated)
    except ValueError:
        return True
    return when.year > 1


def ip_allocation(address: dict, network_id: str) -> IpAllocation:
    if not _is_allocated(address.get("allocated")):
        return IpAllocation.UNALLOCATED
    if network_id and address.get("associatednetworkid") == network_id:
        return IpAllocation.ALLOCATED_ASSOCIATED
    return IpAllocation.ALLOCATED_UNASSOCIATED


def resolve_public_ip_details(cloud: RemoteResourceClient, cluster: Cluster) -> dict:
    """Return the first public IP matching the cluster's scope and endpoint host."""
    params: Dict[str, Any] = {"allocatedonly": False, **scope(cluster)}
    if cluster.spec.control_plane_endpoint.host:
        params["ipaddress"] = cluster.spec.control_plane_endpoint.host
    addresses = cloud.list_public_ip_addresses(**params)
    if not addresses:
        raise NotFoundError("no public addresses found")
    return addresses[0]


def associate_public_ip_address(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Make sure a public IP is associated with the cluster's network and use it as the endpoint."""
    address = resolve_public_ip_details(cloud, cluster)
    state = ip_allocation(address, cluster.status.network_id)

    if state is IpAllocation.ALLOCATED_ASSOCIATED:
        logger.debug("Public IP %s already associated with network %s",
                     address["ipaddress"], cluster.status.network_id)
    else:
        cloud.associate_ip_address(
            networkid=cluster.status.network_id,
            ipaddress=address["ipaddress"],
            **scope(cluster),
        )
        logger.info("Associated public IP %s (%s) with network %s",
                    address["ipaddress"], state.value, cluster.status.network_id)

    cluster.spec.control_plane_endpoint.host = address["ipaddress"]
    cluster.status.set_identity("public_ip_id", address["id"])


# ---------------------------------------------------------------------------
# Load balancer --------------------------------------------------------------
# ---------------------------------------------------------------------------

def api_port(cluster: Cluster) -> int:
    return cluster.spec.control_plane_endpoint.port or K8S_DEFAULT_API_PORT


def resolve_load_balancer_rule_details(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Record the id of the rule forwarding the control-plane port on the public IP.

    A rule id already recorded in status must be listed as is; its absence raises
    :class:`NotFoundError` without matching any other rule.
    """
    rules = cloud.list_load_balancer_rules(publicipid=cluster.status.public_ip_id, **scope(cluster))
    recorded = cluster.status.lb_rule_id
    if recorded:
        if any(rule.get("id") == recorded for rule in rules):
            return
        raise NotFoundError(f"Load balancer rule {recorded} recorded in status is not visible yet.")
    wanted = str(api_port(cluster))
    for rule in rules:
        if rule.get("publicport") == wanted:
            cluster.status.set_identity("lb_rule_id", rule["id"])
            return
    raise NotFoundError("no load balancer rule found")


def get_or_create_load_balancer_rule(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    try:
        resolve_load_balancer_rule_details(cloud, cluster)
        return
    except NotFoundError:
        if cluster.status.lb_rule_id:
            raise

    rule = cloud.create_load_balancer_rule(
        algorithm=LB_ALGORITHM,
        name=LB_RULE_NAME,
        privateport=K8S_DEFAULT_API_PORT,
        publicport=api_port(cluster),
        networkid=cluster.status.network_id,
        publicipid=cluster.status.public_ip_id,
        protocol="tcp",
        **scope(cluster),
    )
    cluster.status.set_identity("lb_rule_id", rule["id"])
    logger.info("Created load balancer rule %s on port %s", rule["id"], api_port(cluster))


def assign_vm_to_load_balancer_rule(cloud: RemoteResourceClient, cluster: Cluster, instance_id: str) -> bool:
    """Put *instance_id* behind the cluster's rule. Returns True if an assignment was made."""
    members = cloud.list_load_balancer_rule_instances(id=cluster.status.lb_rule_id)
    if any(member.get("id") == instance_id for member in members):
        return False
    cloud.assign_to_load_balancer_rule(id=cluster.status.lb_rule_id, virtualmachineids=[instance_id])
    logger.info("Assigned instance %s to load balancer rule %s", instance_id, cluster.status.lb_rule_id)
    return True


# ---------------------------------------------------------------------------
# Firewall -------------------------------------------------------------------
# ---------------------------------------------------------------------------

def open_firewall_rules(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Open egress TCP on the cluster's network; an identical existing rule is success."""
    try:
        cloud.create_egress_firewall_rule(networkid=cluster.status.network_id, protocol="tcp")
    except CloudError as exc:
        if is_already_satisfied(exc):
            logger.debug("Egress rule already present on network %s", cluster.status.network_id)
            return
        raise
    logger.info("Opened egress firewall on network %s", cluster.status.network_id)
