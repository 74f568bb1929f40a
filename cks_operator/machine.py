"""
machine.py
----------
Machine Membership State Machine.

    Pending -> InstanceCreating -> InstanceRunning -> InCksCluster -> Ready
    (deleting) -> RemovingFromCks -> InstanceDestroying -> Removed

Nothing here loops or sleeps. Each entry point performs as much of the
progression as the cloud allows right now, persists what it has confirmed and
returns the phase it reached; the trigger re-enters it until it reports
``Ready`` (or ``Removed``). The CKS steps only run when the cluster has
``syncWithCks`` enabled.

Deletion order is the point of the finalizer: the VM leaves the CKS roster,
then the instance is destroyed, and only then is the finalizer removed and the
record allowed to disappear.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .cloud import cks
from .cloud.client import RemoteResourceClient
from .cloud.instance import destroy_vm_instance, get_or_create_vm_instance
from .cloud.network import assign_vm_to_load_balancer_rule
from .errors import CloudError
from .models import INSTANCE_STATE_RUNNING, Cluster, Machine
from .store import StateStore

logger = logging.getLogger(__name__)


class MachinePhase(str, Enum):
    PENDING = "Pending"
    INSTANCE_CREATING = "InstanceCreating"
    INSTANCE_RUNNING = "InstanceRunning"
    IN_CKS_CLUSTER = "InCksCluster"
    READY = "Ready"
    REMOVING_FROM_CKS = "RemovingFromCks"
    INSTANCE_DESTROYING = "InstanceDestroying"
    REMOVED = "Removed"


def observe_phase(machine: Machine, cluster: Optional[Cluster]) -> MachinePhase:
    """Phase implied by what is already recorded on *machine*."""
    syncing = cluster is not None and cluster.spec.sync_with_cks
    if machine.is_deleting:
        if syncing and machine.has_finalizer:
            return MachinePhase.REMOVING_FROM_CKS
        return MachinePhase.INSTANCE_DESTROYING
    if machine.status.ready:
        return MachinePhase.READY
    if syncing and machine.has_finalizer:
        return MachinePhase.IN_CKS_CLUSTER
    if machine.status.instance_state == INSTANCE_STATE_RUNNING:
        return MachinePhase.INSTANCE_RUNNING
    if machine.spec.instance_id:
        return MachinePhase.INSTANCE_CREATING
    return MachinePhase.PENDING


def advance_machine(
    cloud: RemoteResourceClient,
    store: StateStore,
    machine: Machine,
    cluster: Cluster,
) -> MachinePhase:
    """Move *machine* as far towards ``Ready`` as possible and return the phase reached."""
    if machine.is_deleting:
        logger.debug("Machine %s is being deleted, not advancing", machine.name)
        return observe_phase(machine, cluster)

    if not cluster.status.ready:
        logger.info("Cluster %s networking not ready yet, machine %s waits", cluster.name, machine.name)
        return MachinePhase.PENDING

    # Pending -> InstanceCreating
    user_data = None
    if not machine.spec.instance_id and machine.spec.bootstrap_data_secret_name:
        user_data = store.get_bootstrap_data(machine.metadata.namespace, machine.spec.bootstrap_data_secret_name)
        if user_data is None:
            logger.info("Bootstrap data for machine %s not available yet", machine.name)
            return MachinePhase.PENDING

    get_or_create_vm_instance(cloud, machine, cluster, user_data)
    store.save_machine(machine)

    # InstanceCreating -> InstanceRunning
    if machine.status.instance_state != INSTANCE_STATE_RUNNING:
        logger.info("Instance %s of machine %s is %s, waiting for %s",
                    machine.spec.instance_id, machine.name,
                    machine.status.instance_state or "unknown", INSTANCE_STATE_RUNNING)
        return MachinePhase.INSTANCE_CREATING

    if machine.is_control_plane and cluster.status.lb_rule_id:
        assign_vm_to_load_balancer_rule(cloud, cluster, machine.spec.instance_id)

    # InstanceRunning -> InCksCluster
    if cluster.spec.sync_with_cks and not machine.has_finalizer:
        if not cluster.status.cks_cluster_id:
            logger.info("CKS cluster for %s not registered yet, machine %s waits", cluster.name, machine.name)
            return MachinePhase.INSTANCE_RUNNING
        cks.add_vm_to_cks_cluster(cloud, cluster, machine)
        store.add_finalizer(machine)

    # InCksCluster (or InstanceRunning without CKS) -> Ready
    if not machine.status.ready:
        machine.status.ready = True
        store.save_machine(machine)
        logger.info("Machine %s is ready", machine.name)
    return MachinePhase.READY


def retire_machine(
    cloud: RemoteResourceClient,
    store: StateStore,
    machine: Machine,
    cluster: Optional[Cluster],
) -> MachinePhase:
    """Take *machine* out of the CKS roster, destroy its instance, then release the finalizer.

    Any failure propagates before the finalizer is touched, so a retry picks up
    where this pass stopped.
    """
    if cluster is None and machine.has_finalizer:
        raise CloudError(
            f"Cluster of machine {machine.name} not found; cannot take it out of the CKS roster."
        )
    if cluster is not None and cluster.spec.sync_with_cks and machine.has_finalizer:
        logger.info("Machine %s: %s", machine.name, MachinePhase.REMOVING_FROM_CKS.value)
        cks.remove_vm_from_cks_cluster(cloud, cluster, machine)

    logger.info("Machine %s: %s", machine.name, MachinePhase.INSTANCE_DESTROYING.value)
    destroy_vm_instance(cloud, machine)

    store.remove_finalizer(machine)
    logger.info("Machine %s: %s", machine.name, MachinePhase.REMOVED.value)
    return MachinePhase.REMOVED
