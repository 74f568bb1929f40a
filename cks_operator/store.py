"""
store.py
--------
Declarative state store: reads and writes the ``CloudStackCluster`` and
``CloudStackMachine`` records the operator converges, including the machine
finalizer that gates physical deletion of a machine record.
"""
from __future__ import annotations

import base64
import logging
from typing import Optional, Protocol

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from .config import CLUSTER_PLURAL, INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL
from .errors import ConflictError
from .models import CLUSTER_NAME_LABEL, MACHINE_FINALIZER, Cluster, Machine, ObjectMeta

logger = logging.getLogger(__name__)

BOOTSTRAP_DATA_KEY = "value"


def _track_version(meta: ObjectMeta, updated: Optional[dict]) -> None:
    """Record the resourceVersion a write returned."""
    if isinstance(updated, dict):
        version = updated.get("metadata", {}).get("resourceVersion")
        if version:
            meta.resource_version = version


class StateStore(Protocol):
    def get_cluster(self, namespace: str, name: str) -> Optional[Cluster]: ...
    def save_cluster(self, cluster: Cluster) -> None: ...
    def save_machine(self, machine: Machine) -> None: ...
    def add_finalizer(self, machine: Machine) -> None: ...
    def remove_finalizer(self, machine: Machine) -> None: ...
    def get_bootstrap_data(self, namespace: str, secret_name: str) -> Optional[str]: ...
    def list_machine_names(self, namespace: str, cluster_name: str) -> list[str]: ...


class KubeStateStore:
    """:class:`StateStore` backed by the Kubernetes API."""

    def __init__(self, custom_api: CustomObjectsApi, core_api: CoreV1Api):
        self.custom_api = custom_api
        self.core_api = core_api

    # -- clusters ----------------------------------------------------------

    def get_cluster(self, namespace: str, name: str) -> Optional[Cluster]:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                INFRA_GROUP, INFRA_VERSION, namespace, CLUSTER_PLURAL, name
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return Cluster.from_body(body)

    def save_cluster(self, cluster: Cluster) -> None:
        """Persist the resolved control-plane endpoint and the status subresource."""
        meta = cluster.metadata
        _track_version(meta, self._patch(
            CLUSTER_PLURAL, meta.namespace, meta.name,
            {"spec": {"controlPlaneEndpoint": cluster.spec.control_plane_endpoint.to_body()}},
        ))
        _track_version(meta, self._patch_status(
            CLUSTER_PLURAL, meta.namespace, meta.name, cluster.status.model_dump(by_alias=True)
        ))

    # -- machines ----------------------------------------------------------

    def save_machine(self, machine: Machine) -> None:
        meta = machine.metadata
        spec_fields = {"instanceId": machine.spec.instance_id, "providerId": machine.spec.provider_id}
        if any(spec_fields.values()):
            _track_version(meta, self._patch(MACHINE_PLURAL, meta.namespace, meta.name, {"spec": spec_fields}))
        _track_version(meta, self._patch_status(
            MACHINE_PLURAL, meta.namespace, meta.name, machine.status.model_dump(by_alias=True)
        ))

    def add_finalizer(self, machine: Machine) -> None:
        if machine.has_finalizer:
            return
        self._set_finalizers(machine, [*machine.metadata.finalizers, MACHINE_FINALIZER])
        logger.info("Added finalizer to machine %s", machine.name)

    def remove_finalizer(self, machine: Machine) -> None:
        if not machine.has_finalizer:
            return
        self._set_finalizers(machine, [f for f in machine.metadata.finalizers if f != MACHINE_FINALIZER])
        logger.info("Removed finalizer from machine %s", machine.name)

    def _set_finalizers(self, machine: Machine, finalizers: list[str]) -> None:
        meta = machine.metadata
        patch = {"metadata": {"finalizers": finalizers}}
        if meta.resource_version:
            # A stale resourceVersion makes the API server refuse the list replacement.
            patch["metadata"]["resourceVersion"] = meta.resource_version
        updated = self._patch(MACHINE_PLURAL, meta.namespace, meta.name, patch)
        meta.finalizers = finalizers
        _track_version(meta, updated)

    def list_machine_names(self, namespace: str, cluster_name: str) -> list[str]:
        """Names of the machine records still labelled with *cluster_name*."""
        found = self.custom_api.list_namespaced_custom_object(
            INFRA_GROUP, INFRA_VERSION, namespace, MACHINE_PLURAL,
            label_selector=f"{CLUSTER_NAME_LABEL}={cluster_name}",
        )
        return [item["metadata"]["name"] for item in found.get("items", [])]

    # -- bootstrap data ----------------------------------------------------

    def get_bootstrap_data(self, namespace: str, secret_name: str) -> Optional[str]:
        """Return the decoded bootstrap data, or ``None`` while the secret does not exist yet."""
        try:
            secret = self.core_api.read_namespaced_secret(secret_name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                logger.debug("Bootstrap secret %s/%s not there yet", namespace, secret_name)
                return None
            raise
        encoded = (secret.data or {}).get(BOOTSTRAP_DATA_KEY)
        if not encoded:
            return None
        return base64.b64decode(encoded).decode()

    # -- plumbing ----------------------------------------------------------

    def _patch(self, plural: str, namespace: str, name: str, body: dict) -> dict:
        try:
            return self.custom_api.patch_namespaced_custom_object(
                INFRA_GROUP, INFRA_VERSION, namespace, plural, name, body
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(f"{plural}/{name} changed concurrently: {exc.reason}") from exc
            raise

    def _patch_status(self, plural: str, namespace: str, name: str, status: dict) -> dict:
        try:
            return self.custom_api.patch_namespaced_custom_object_status(
                INFRA_GROUP, INFRA_VERSION, namespace, plural, name, {"status": status}
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(f"{plural}/{name} status changed concurrently: {exc.reason}") from exc
            raise
