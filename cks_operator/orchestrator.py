"""
orchestrator.py
---------------
Cluster Convergence Orchestrator: sequences the resolvers that bring a
cluster's networking up, and tears it down again.

Network resolution may fail for several reasons at once (a failed name lookup
and a failed id lookup), so its failure is always raised as a
:class:`~cks_operator.errors.MultiError` carrying every cause. The steps after
it fail fast with their single error; the next pass starts over from the top
and skips whatever is already recorded in status.
"""
from __future__ import annotations

import logging
from typing import Callable, Tuple

from .cloud import cks
from .cloud.client import RemoteResourceClient
from .cloud.network import (
    associate_public_ip_address,
    destroy_network,
    get_or_create_load_balancer_rule,
    get_or_create_network,
    open_firewall_rules,
    resolve_domain,
    resolve_zone,
)
from .errors import CloudError, MultiError, append_error
from .models import Cluster

logger = logging.getLogger(__name__)

Step = Callable[[RemoteResourceClient, Cluster], None]


# Run in order once the network is known; each fails the pass on its own.
POST_NETWORK_STEPS: Tuple[Tuple[str, Step], ...] = (
    ("associate public IP", associate_public_ip_address),
    ("load balancer rule", get_or_create_load_balancer_rule),
    ("egress firewall", open_firewall_rules),
)


def ensure_cluster_networking(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Converge zone, domain, network, public IP, load-balancer rule and firewall for *cluster*.

    Raises :class:`MultiError` when the network cannot be resolved or created and
    the failing step's own error for anything after that. On success the cluster
    is marked ready. Status fields recorded before a failure stay recorded.
    """
    logger.info("Ensuring networking for cluster %s", cluster.name)

    resolve_zone(cloud, cluster)
    resolve_domain(cloud, cluster)

    try:
        get_or_create_network(cloud, cluster)
    except CloudError as exc:
        if isinstance(exc, MultiError):
            raise
        raise append_error(None, exc) from exc

    for label, step in POST_NETWORK_STEPS:
        logger.debug("Cluster %s: %s", cluster.name, label)
        step(cloud, cluster)

    if cluster.spec.sync_with_cks:
        cks.get_or_create_cks_cluster(cloud, cluster)

    cluster.status.ready = True
    logger.info(
        "Cluster %s networking converged: network=%s ip=%s lb=%s endpoint=%s:%s",
        cluster.name,
        cluster.status.network_id,
        cluster.status.public_ip_id,
        cluster.status.lb_rule_id,
        cluster.spec.control_plane_endpoint.host,
        cluster.spec.control_plane_endpoint.port,
    )


def destroy_cluster_networking(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Delete the CKS registration (if any) and the cluster's network.

    The caller is responsible for having retired every machine on the network first.
    """
    logger.info("Destroying networking for cluster %s", cluster.name)
    if cluster.spec.sync_with_cks:
        cks.delete_cks_cluster(cloud, cluster)
    destroy_network(cloud, cluster)
    cluster.status.ready = False
