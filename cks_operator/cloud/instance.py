"""Get-or-create and destroy the CloudStack VM instance behind a machine."""
from __future__ import annotations

import base64
import logging
from typing import Optional

from ..errors import CloudError, NotFoundError, RemoteError
from ..models import Cluster, Machine, MachineAddress
from .client import RemoteResourceClient
from .network import exactly_one, is_missing_id, scope, zone_id_for

logger = logging.getLogger(__name__)

PROVIDER_ID_PREFIX = "cloudstack:///"


def _record_instance(machine: Machine, vm: dict) -> None:
    machine.spec.instance_id = vm["id"]
    machine.spec.provider_id = f"{PROVIDER_ID_PREFIX}{vm['id']}"
    machine.status.instance_state = vm.get("state", "")
    machine.status.addresses = [
        MachineAddress(type="InternalIP", address=nic["ipaddress"])
        for nic in vm.get("nic", [])
        if nic.get("ipaddress")
    ]


def resolve_vm_instance(cloud: RemoteResourceClient, machine: Machine, cluster: Cluster) -> dict:
    """Find the machine's VM by its recorded id or, failing that, by the machine name."""
    instance_id = machine.spec.instance_id
    if instance_id:
        try:
            vms = cloud.list_virtual_machines(id=instance_id, **scope(cluster))
        except RemoteError as exc:
            if is_missing_id(exc):
                raise NotFoundError(f"No match found for VM with id {instance_id}.") from exc
            raise
        return exactly_one(vms, f"VM with id {instance_id}")

    vms = [vm for vm in cloud.list_virtual_machines(name=machine.name, **scope(cluster))
           if vm.get("name") == machine.name]
    return exactly_one(vms, f"VM with name {machine.name}")


def get_or_create_vm_instance(
    cloud: RemoteResourceClient,
    machine: Machine,
    cluster: Cluster,
    user_data: Optional[str] = None,
) -> dict:
    """Adopt or deploy the machine's VM and record its id, state and addresses."""
    try:
        vm = resolve_vm_instance(cloud, machine, cluster)
    except NotFoundError:
        if machine.spec.instance_id:
            # The declared instance is gone; deploying a replacement would orphan its id.
            raise
    else:
        _record_instance(machine, vm)
        return vm

    failure_domain = cluster.failure_domain(machine.spec.failure_domain_name)
    if failure_domain is None:
        raise CloudError(
            f"Failure domain {machine.spec.failure_domain_name!r} not found on cluster {cluster.name}."
        )

    params = {
        "name": machine.name,
        "displayname": machine.name,
        "serviceofferingid": machine.spec.offering,
        "templateid": machine.spec.template,
        "zoneid": zone_id_for(cloud, failure_domain),
        "networkids": [cluster.status.network_id],
        "keypair": machine.spec.ssh_key or None,
        "affinitygroupids": machine.spec.affinity_group_ids or None,
        "account": failure_domain.account or cluster.spec.account or None,
        "domainid": cluster.status.domain_id or None,
    }
    if user_data:
        params["userdata"] = base64.b64encode(user_data.encode()).decode()
    for key, value in machine.spec.details.items():
        params[f"details[0].{key}"] = value

    vm = cloud.deploy_virtual_machine(**params)
    _record_instance(machine, vm)
    logger.info("Deployed VM %s (%s) for machine %s", machine.name, vm["id"], machine.name)
    return vm


def destroy_vm_instance(cloud: RemoteResourceClient, machine: Machine) -> None:
    """Destroy and expunge the machine's VM. An instance that is already gone counts as destroyed."""
    instance_id = machine.spec.instance_id
    if not instance_id:
        logger.debug("Machine %s never got an instance, nothing to destroy", machine.name)
        return
    try:
        cloud.destroy_virtual_machine(id=instance_id, expunge=True)
    except RemoteError as exc:
        if is_missing_id(exc):
            logger.info("VM %s already gone", instance_id)
            return
        raise
    logger.info("Destroyed VM %s of machine %s", instance_id, machine.name)
