"""
models.py
---------
Pydantic views over the ``CloudStackCluster`` / ``CloudStackMachine`` custom
resources. Field names are snake_case in Python and camelCase on the wire, so a
kopf ``body`` can be validated straight into a model and a status can be dumped
straight back into a patch.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import IdentityConflictError

# The presence of this finalizer keeps the machine record (and CAPI's view of it)
# around until the VM has left the CKS roster and been destroyed.
MACHINE_FINALIZER = "cloudstackmachine.infrastructure.cluster.x-k8s.io"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"

INSTANCE_STATE_RUNNING = "Running"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = None


# ---------------------------------------------------------------------------
# Cluster --------------------------------------------------------------------
# ---------------------------------------------------------------------------

class Zone(_Model):
    id: str = ""
    name: str = ""


class FailureDomain(_Model):
    """Zone/account/domain scope a machine may be placed in."""

    name: str
    zone: Zone = Field(default_factory=Zone)
    account: str = ""
    domain: str = ""


class APIEndpoint(_Model):
    host: str = ""
    port: int = 0


class ClusterSpec(_Model):
    network: str
    control_plane_endpoint: APIEndpoint = Field(default_factory=APIEndpoint)
    account: str = ""
    domain: str = ""
    failure_domains: List[FailureDomain] = Field(default_factory=list)
    sync_with_cks: bool = False


class ClusterStatus(_Model):
    zone_id: str = ""
    domain_id: str = ""
    network_id: str = ""
    network_type: str = ""
    public_ip_id: str = ""
    lb_rule_id: str = ""
    cks_cluster_id: str = ""
    ready: bool = False
    failure_message: Optional[str] = None

    def set_identity(self, field: str, value: str) -> None:
        """Record *value* in *field* unless a different identity is already recorded."""
        current = getattr(self, field)
        if current and current != value:
            raise IdentityConflictError(
                f"Refusing to replace {field} {current!r} with {value!r}."
            )
        setattr(self, field, value)


class Cluster(_Model):
    metadata: ObjectMeta
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @classmethod
    def from_body(cls, body) -> "Cluster":
        return cls.model_validate(dict(body))

    @property
    def name(self) -> str:
        return self.metadata.name

    def failure_domain(self, name: Optional[str] = None) -> Optional[FailureDomain]:
        """Return the failure domain called *name*, or the first one when *name* is empty."""
        if not self.spec.failure_domains:
            return None
        if not name:
            return self.spec.failure_domains[0]
        for domain in self.spec.failure_domains:
            if domain.name == name:
                return domain
        return None


# ---------------------------------------------------------------------------
# Machine --------------------------------------------------------------------
# ---------------------------------------------------------------------------

class MachineAddress(_Model):
    type: str = "InternalIP"
    address: str


class MachineSpec(_Model):
    instance_id: Optional[str] = None
    provider_id: Optional[str] = None
    offering: str
    template: str
    ssh_key: str = ""
    details: Dict[str, str] = Field(default_factory=dict)
    affinity_group_ids: List[str] = Field(default_factory=list)
    bootstrap_data_secret_name: Optional[str] = None
    failure_domain_name: Optional[str] = None


class MachineStatus(_Model):
    addresses: List[MachineAddress] = Field(default_factory=list)
    instance_state: str = ""
    ready: bool = False
    failure_message: Optional[str] = None


class Machine(_Model):
    metadata: ObjectMeta
    spec: MachineSpec
    status: MachineStatus = Field(default_factory=MachineStatus)

    @classmethod
    def from_body(cls, body) -> "Machine":
        return cls.model_validate(dict(body))

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def cluster_name(self) -> Optional[str]:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL)

    @property
    def is_control_plane(self) -> bool:
        return CONTROL_PLANE_LABEL in self.metadata.labels

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return MACHINE_FINALIZER in self.metadata.finalizers
