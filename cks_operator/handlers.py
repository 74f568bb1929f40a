"""
handlers.py
-----------
Kopf handlers that drive the four reconciliation entry points for
`CloudStackCluster` and `CloudStackMachine` resources.

Key responsibilities
~~~~~~~~~~~~~~~~~~~~
* Bootstrap the operator (load configuration, build the CloudStack and
  Kubernetes clients, apply the CRDs).
* Call ``ensure_cluster_networking`` / ``advance_machine`` on create, update,
  resume and on a periodic resync timer.
* Call ``destroy_cluster_networking`` / ``retire_machine`` on deletion.
* Turn the outcome of a pass into kopf's retry vocabulary: an unconverged
  object or a remote failure is a ``kopf.TemporaryError`` with an exponential
  delay, an ambiguous lookup or an identity conflict is a ``kopf.PermanentError``.

Kopf keeps one handler invocation per object at a time; timers are the one
exception, so timer and change handlers share a per-object lock.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import kopf
import kubernetes
from kopf import OperatorSettings
from kubernetes.client import ApiextensionsV1Api, CoreV1Api, CustomObjectsApi

from .cloud.client import CloudStackClient, RemoteResourceClient
from .config import (
    BACKOFF_BASE,
    BACKOFF_MAX,
    CLUSTER_PLURAL,
    INFRA_GROUP,
    INFRA_VERSION,
    MACHINE_PLURAL,
    RESYNC_INTERVAL,
    load_cloudstack_settings,
)
from .crds import ensure_crds
from .errors import AmbiguousError, CloudError, IdentityConflictError, MultiError
from .machine import MachinePhase, advance_machine, retire_machine
from .models import CLUSTER_NAME_LABEL, Cluster, Machine
from .orchestrator import destroy_cluster_networking, ensure_cluster_networking
from .store import KubeStateStore, StateStore

logger = logging.getLogger(__name__)

KOPF_FINALIZER = f"{INFRA_GROUP}/cks-operator"

# Set by the startup handler (or by tests).
CLOUD: Optional[RemoteResourceClient] = None
STORE: Optional[StateStore] = None

_LOCKS_GUARD = threading.Lock()
_LOCKS: Dict[str, threading.Lock] = {}

# ---------------------------------------------------------------------------
# Bootstrap helpers ----------------------------------------------------------
# ---------------------------------------------------------------------------

def _init_cloud_client() -> CloudStackClient:
    """Create and return a CloudStack client or raise ``kopf.PermanentError``."""
    try:
        settings = load_cloudstack_settings()
    except ValueError as exc:
        logger.critical("%s", exc)
        raise kopf.PermanentError(str(exc)) from exc
    client = CloudStackClient(settings)
    logger.info("CloudStack client initialised for %s", settings.api_url)
    return client


def _init_kubernetes_clients() -> tuple[CoreV1Api, CustomObjectsApi, ApiextensionsV1Api]:
    """Return (core_v1, custom_objects, apiext) after loading the kube config."""
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster kube-config")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_kube_config()
            logger.info("Loaded kube-config from local file")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise kopf.PermanentError("Cannot load Kubernetes config") from exc
    return CoreV1Api(), CustomObjectsApi(), ApiextensionsV1Api()


# ---------------------------------------------------------------------------
# Pass helpers ---------------------------------------------------------------
# ---------------------------------------------------------------------------

def backoff_delay(retry: int) -> float:
    """Exponential retry delay, capped at ``BACKOFF_MAX``."""
    return min(BACKOFF_BASE * (2 ** max(retry, 0)), BACKOFF_MAX)


def _is_permanent(exc: CloudError) -> bool:
    fatal = (AmbiguousError, IdentityConflictError)
    if isinstance(exc, MultiError):
        return any(exc.has(kind) for kind in fatal)
    return isinstance(exc, fatal)


def _raise_for(exc: CloudError, retry: int, what: str) -> None:
    if _is_permanent(exc):
        raise kopf.PermanentError(f"{what}: {exc}") from exc
    raise kopf.TemporaryError(f"{what}: {exc}", delay=backoff_delay(retry)) from exc


@contextmanager
def _serialized(uid: str) -> Iterator[None]:
    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(uid, threading.Lock())
    with lock:
        yield


def _forget(uid: str) -> None:
    with _LOCKS_GUARD:
        _LOCKS.pop(uid, None)


def _save_cluster(cluster: Cluster, retry: int) -> None:
    try:
        STORE.save_cluster(cluster)
    except CloudError as exc:
        _raise_for(exc, retry, f"Saving cluster {cluster.name}")


def _save_machine(machine: Machine, retry: int) -> None:
    try:
        STORE.save_machine(machine)
    except CloudError as exc:
        _raise_for(exc, retry, f"Saving machine {machine.name}")


def _cluster_for(machine: Machine) -> Optional[Cluster]:
    if not machine.cluster_name:
        raise kopf.PermanentError(f"Machine {machine.name} has no {CLUSTER_NAME_LABEL} label")
    return STORE.get_cluster(machine.metadata.namespace, machine.cluster_name)


def reconcile_cluster(cluster: Cluster, logger: logging.Logger, retry: int = 0) -> None:
    """Run one ``ensure_cluster_networking`` pass and persist whatever it confirmed."""
    with _serialized(cluster.metadata.uid or cluster.name):
        try:
            ensure_cluster_networking(CLOUD, cluster)
        except CloudError as exc:
            logger.error("Cluster %s networking pass failed: %s", cluster.name, exc)
            cluster.status.failure_message = str(exc)
            _save_cluster(cluster, retry)
            _raise_for(exc, retry, f"Cluster {cluster.name}")
        cluster.status.failure_message = None
        _save_cluster(cluster, retry)


def reconcile_machine(machine: Machine, logger: logging.Logger, retry: int = 0) -> MachinePhase:
    """Run one ``advance_machine`` pass; anything short of ``Ready`` is retried."""
    with _serialized(machine.metadata.uid or machine.name):
        cluster = _cluster_for(machine)
        if cluster is None:
            raise kopf.TemporaryError(
                f"Cluster {machine.cluster_name} of machine {machine.name} not found",
                delay=backoff_delay(retry),
            )
        try:
            phase = advance_machine(CLOUD, STORE, machine, cluster)
        except CloudError as exc:
            logger.error("Machine %s pass failed: %s", machine.name, exc)
            machine.status.failure_message = str(exc)
            _save_machine(machine, retry)
            _raise_for(exc, retry, f"Machine {machine.name}")

        if machine.status.failure_message:
            machine.status.failure_message = None
            _save_machine(machine, retry)
        if phase is not MachinePhase.READY:
            raise kopf.TemporaryError(f"Machine {machine.name} is {phase.value}", delay=backoff_delay(retry))
        return phase


# ---------------------------------------------------------------------------
# Kopf handlers --------------------------------------------------------------
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, **_: Dict[str, object]) -> None:
    """Tune kopf, build the clients and make sure the CRDs exist."""
    global CLOUD, STORE
    settings.watching.server_timeout = 210  # seconds
    settings.persistence.finalizer = KOPF_FINALIZER
    core_v1, custom_objects, apiext = _init_kubernetes_clients()
    ensure_crds(apiext)
    CLOUD = _init_cloud_client()
    STORE = KubeStateStore(custom_objects, core_v1)


@kopf.on.cleanup()
def close_clients(**_: Dict[str, object]) -> None:
    if isinstance(CLOUD, CloudStackClient):
        CLOUD.close()


@kopf.on.resume(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
@kopf.on.create(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
@kopf.on.update(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
def cluster_ensure(body: kopf.Body, logger: kopf.Logger, retry: int, **_: Dict[str, object]) -> None:
    """Converge the cluster's networking."""
    reconcile_cluster(Cluster.from_body(body), logger, retry)


@kopf.on.timer(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL, interval=RESYNC_INTERVAL, idle=RESYNC_INTERVAL)
def cluster_resync(body: kopf.Body, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    cluster = Cluster.from_body(body)
    if cluster.metadata.deletion_timestamp:
        return
    reconcile_cluster(cluster, logger)


@kopf.on.delete(INFRA_GROUP, INFRA_VERSION, CLUSTER_PLURAL)
def cluster_destroy(body: kopf.Body, logger: kopf.Logger, retry: int, **_: Dict[str, object]) -> None:
    """Tear down cluster networking once no machine of the cluster is left."""
    cluster = Cluster.from_body(body)
    remaining = STORE.list_machine_names(cluster.metadata.namespace, cluster.name)
    if remaining:
        raise kopf.TemporaryError(
            f"Cluster {cluster.name} still has machines: {', '.join(sorted(remaining))}",
            delay=backoff_delay(retry),
        )
    with _serialized(cluster.metadata.uid or cluster.name):
        try:
            destroy_cluster_networking(CLOUD, cluster)
        except CloudError as exc:
            logger.error("Cluster %s teardown failed: %s", cluster.name, exc)
            _raise_for(exc, retry, f"Cluster {cluster.name} teardown")
    _forget(cluster.metadata.uid or cluster.name)
    logger.info("Cluster %s networking destroyed", cluster.name)


@kopf.on.resume(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
@kopf.on.create(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
@kopf.on.update(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
def machine_advance(body: kopf.Body, logger: kopf.Logger, retry: int, **_: Dict[str, object]) -> dict:
    """Bring the machine's instance up and into the cluster."""
    phase = reconcile_machine(Machine.from_body(body), logger, retry)
    return {"phase": phase.value}


@kopf.on.timer(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL, interval=RESYNC_INTERVAL, idle=RESYNC_INTERVAL)
def machine_resync(body: kopf.Body, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    machine = Machine.from_body(body)
    if machine.is_deleting:
        return
    reconcile_machine(machine, logger)


@kopf.on.delete(INFRA_GROUP, INFRA_VERSION, MACHINE_PLURAL)
def machine_retire(body: kopf.Body, logger: kopf.Logger, retry: int, **_: Dict[str, object]) -> None:
    """Leave the CKS roster, destroy the instance, release the finalizer."""
    machine = Machine.from_body(body)
    cluster = STORE.get_cluster(machine.metadata.namespace, machine.cluster_name) if machine.cluster_name else None
    with _serialized(machine.metadata.uid or machine.name):
        try:
            retire_machine(CLOUD, STORE, machine, cluster)
        except CloudError as exc:
            logger.error("Machine %s retirement failed: %s", machine.name, exc)
            _raise_for(exc, retry, f"Machine {machine.name} retirement")
    _forget(machine.metadata.uid or machine.name)
