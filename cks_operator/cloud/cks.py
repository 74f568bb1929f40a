"""
cks.py
------
CloudStack Kubernetes Service (CKS) bookkeeping. The cluster itself is managed
by this operator, so CKS only tracks it as an *externally managed* cluster whose
member VMs must be added and removed as machines come and go.
"""
from __future__ import annotations

import logging

from ..errors import NotFoundError, RemoteError
from ..models import Cluster, Machine
from .client import RemoteResourceClient
from .network import exactly_one, is_missing_id, scope

logger = logging.getLogger(__name__)

CKS_CLUSTER_TYPE = "ExternalManaged"


def resolve_cks_cluster(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    """Record the id of the CKS cluster named after *cluster*."""
    name = cluster.name
    found = [item for item in cloud.list_kubernetes_clusters(name=name, **scope(cluster))
             if item.get("name") == name]
    cluster.status.set_identity("cks_cluster_id", exactly_one(found, f"CKS cluster {name}")["id"])


def get_or_create_cks_cluster(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    if cluster.status.cks_cluster_id:
        return
    try:
        resolve_cks_cluster(cloud, cluster)
        return
    except NotFoundError:
        pass

    created = cloud.create_kubernetes_cluster(
        name=cluster.name,
        description=f"{cluster.name} managed by cluster API",
        clustertype=CKS_CLUSTER_TYPE,
        zoneid=cluster.status.zone_id,
        networkid=cluster.status.network_id,
        **scope(cluster),
    )
    cluster.status.set_identity("cks_cluster_id", created["id"])
    logger.info("Registered CKS cluster %s (%s)", cluster.name, created["id"])


def delete_cks_cluster(cloud: RemoteResourceClient, cluster: Cluster) -> None:
    cks_id = cluster.status.cks_cluster_id
    if not cks_id:
        return
    try:
        cloud.delete_kubernetes_cluster(id=cks_id)
    except RemoteError as exc:
        if not is_missing_id(exc):
            raise
        logger.info("CKS cluster %s already gone", cks_id)
        return
    logger.info("Deleted CKS cluster %s", cks_id)


def add_vm_to_cks_cluster(cloud: RemoteResourceClient, cluster: Cluster, machine: Machine) -> None:
    cloud.add_virtual_machines_to_kubernetes_cluster(
        id=cluster.status.cks_cluster_id, virtualmachineids=[machine.spec.instance_id]
    )
    logger.info("Added VM %s to CKS cluster %s", machine.spec.instance_id, cluster.status.cks_cluster_id)


def remove_vm_from_cks_cluster(cloud: RemoteResourceClient, cluster: Cluster, machine: Machine) -> None:
    cloud.remove_virtual_machines_from_kubernetes_cluster(
        id=cluster.status.cks_cluster_id, virtualmachineids=[machine.spec.instance_id]
    )
    logger.info("Removed VM %s from CKS cluster %s", machine.spec.instance_id, cluster.status.cks_cluster_id)
