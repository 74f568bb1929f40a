"""
client.py
---------
Remote Resource Client: the capability the resolvers, the orchestrator and the
state machine need from CloudStack, and a synchronous ``httpx`` implementation
of it that signs every request with the account's API/secret key pair.

Responses are plain dicts exactly as CloudStack returns them (``id``, ``type``,
``ipaddress``, ``allocated``, ``associatednetworkid``, ``publicport`` ...).
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from ..config import CloudStackSettings
from ..errors import AsyncJobError, RemoteError

logger = logging.getLogger(__name__)

JOB_STATUS_PENDING = 0
JOB_STATUS_SUCCEEDED = 1
JOB_STATUS_FAILED = 2


class RemoteResourceClient(Protocol):
    """Everything this operator asks of the cloud platform."""

    def list_zones(self, **params: Any) -> List[dict]: ...
    def list_domains(self, **params: Any) -> List[dict]: ...

    def list_networks(self, **params: Any) -> List[dict]: ...
    def list_network_offerings(self, **params: Any) -> List[dict]: ...
    def create_network(self, **params: Any) -> dict: ...
    def delete_network(self, id: str) -> dict: ...

    def list_public_ip_addresses(self, **params: Any) -> List[dict]: ...
    def associate_ip_address(self, **params: Any) -> dict: ...

    def create_egress_firewall_rule(self, **params: Any) -> dict: ...

    def list_load_balancer_rules(self, **params: Any) -> List[dict]: ...
    def create_load_balancer_rule(self, **params: Any) -> dict: ...
    def list_load_balancer_rule_instances(self, id: str) -> List[dict]: ...
    def assign_to_load_balancer_rule(self, id: str, virtualmachineids: List[str]) -> dict: ...

    def list_virtual_machines(self, **params: Any) -> List[dict]: ...
    def deploy_virtual_machine(self, **params: Any) -> dict: ...
    def destroy_virtual_machine(self, id: str, expunge: bool = True) -> dict: ...

    def list_kubernetes_clusters(self, **params: Any) -> List[dict]: ...
    def create_kubernetes_cluster(self, **params: Any) -> dict: ...
    def delete_kubernetes_cluster(self, id: str) -> dict: ...
    def add_virtual_machines_to_kubernetes_cluster(self, id: str, virtualmachineids: List[str]) -> dict: ...
    def remove_virtual_machines_from_kubernetes_cluster(self, id: str, virtualmachineids: List[str]) -> dict: ...


def sign_params(params: Dict[str, str], secret_key: str) -> str:
    """Return the CloudStack request signature for *params*.

    Parameters are sorted by lower-cased name, values URL-encoded, the whole query
    lower-cased, HMAC-SHA1'd with the secret key and base64-encoded.
    """
    query = "&".join(
        f"{key}={quote(str(value), safe='*')}"
        for key, value in sorted(params.items(), key=lambda item: item[0].lower())
    )
    digest = hmac.new(secret_key.encode(), query.lower().encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def _encode(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def _flatten(params: Dict[str, Any]) -> Dict[str, str]:
    """Drop empty values and render the rest the way CloudStack expects them."""
    flat: Dict[str, str] = {}
    for key, value in params.items():
        encoded = _encode(value)
        if encoded is not None:
            flat[key] = encoded
    return flat


class CloudStackClient:
    """Synchronous, signed CloudStack API client."""

    def __init__(self, settings: CloudStackSettings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self._http = httpx.Client(
            timeout=settings.timeout,
            verify=settings.verify_ssl,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    # -- transport ---------------------------------------------------------

    def _request(self, command: str, **params: Any) -> dict:
        query = _flatten(params)
        query.update({"command": command, "response": "json", "apiKey": self.settings.api_key})
        query["signature"] = sign_params(query, self.settings.secret_key)

        logger.debug("CloudStack call %s", command)
        try:
            response = self._http.get(self.settings.api_url, params=query)
        except httpx.TimeoutException as exc:
            raise RemoteError(f"{command} timed out: {exc}", command=command) from exc
        except httpx.HTTPError as exc:
            raise RemoteError(f"{command} failed: {exc}", command=command) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteError(
                f"{command} returned a non-JSON body (HTTP {response.status_code})", command=command
            ) from exc

        body = payload.get(f"{command.lower()}response", payload)
        if response.status_code >= 400 or "errortext" in body:
            raise RemoteError(
                f"{command} failed: {body.get('errortext', response.reason_phrase)}",
                command=command,
                error_code=body.get("errorcode", response.status_code),
            )
        return body

    def _list(self, command: str, item_key: str, **params: Any) -> List[dict]:
        params.setdefault("listall", True)
        body = self._request(command, **params)
        return body.get(item_key, [])

    def _wait_for_job(self, command: str, job_id: str) -> dict:
        deadline = time.monotonic() + self.settings.async_timeout
        while True:
            body = self._request("queryAsyncJobResult", jobid=job_id)
            status = body.get("jobstatus", JOB_STATUS_PENDING)
            if status == JOB_STATUS_SUCCEEDED:
                return body.get("jobresult", {})
            if status == JOB_STATUS_FAILED:
                result = body.get("jobresult", {})
                raise AsyncJobError(
                    f"{command} failed: {result.get('errortext', 'unknown error')}",
                    command=command,
                    job_id=job_id,
                    error_code=result.get("errorcode"),
                )
            if time.monotonic() >= deadline:
                raise AsyncJobError(
                    f"{command} job {job_id} did not finish within {self.settings.async_timeout}s",
                    command=command,
                    job_id=job_id,
                )
            time.sleep(self.settings.async_poll_interval)

    def _async(self, command: str, result_key: Optional[str] = None, **params: Any) -> dict:
        body = self._request(command, **params)
        job_id = body.get("jobid")
        if not job_id:
            return body
        result = self._wait_for_job(command, job_id)
        if result_key is None:
            return result
        return result.get(result_key, result)

    # -- zones & domains ---------------------------------------------------

    def list_zones(self, **params: Any) -> List[dict]:
        params.pop("listall", None)
        body = self._request("listZones", **params)
        return body.get("zone", [])

    def list_domains(self, **params: Any) -> List[dict]:
        return self._list("listDomains", "domain", **params)

    # -- networks ----------------------------------------------------------

    def list_networks(self, **params: Any) -> List[dict]:
        return self._list("listNetworks", "network", **params)

    def list_network_offerings(self, **params: Any) -> List[dict]:
        body = self._request("listNetworkOfferings", **params)
        return body.get("networkoffering", [])

    def create_network(self, **params: Any) -> dict:
        return self._request("createNetwork", **params).get("network", {})

    def delete_network(self, id: str) -> dict:
        return self._async("deleteNetwork", id=id)

    # -- public IPs & firewall ---------------------------------------------

    def list_public_ip_addresses(self, **params: Any) -> List[dict]:
        return self._list("listPublicIpAddresses", "publicipaddress", **params)

    def associate_ip_address(self, **params: Any) -> dict:
        return self._async("associateIpAddress", "ipaddress", **params)

    def create_egress_firewall_rule(self, **params: Any) -> dict:
        return self._async("createEgressFirewallRule", "firewallrule", **params)

    # -- load balancer -----------------------------------------------------

    def list_load_balancer_rules(self, **params: Any) -> List[dict]:
        return self._list("listLoadBalancerRules", "loadbalancerrule", **params)

    def create_load_balancer_rule(self, **params: Any) -> dict:
        return self._async("createLoadBalancerRule", "loadbalancer", **params)

    def list_load_balancer_rule_instances(self, id: str) -> List[dict]:
        body = self._request("listLoadBalancerRuleInstances", id=id)
        return body.get("loadbalancerruleinstance", [])

    def assign_to_load_balancer_rule(self, id: str, virtualmachineids: List[str]) -> dict:
        return self._async("assignToLoadBalancerRule", id=id, virtualmachineids=virtualmachineids)

    # -- virtual machines --------------------------------------------------

    def list_virtual_machines(self, **params: Any) -> List[dict]:
        return self._list("listVirtualMachines", "virtualmachine", **params)

    def deploy_virtual_machine(self, **params: Any) -> dict:
        return self._async("deployVirtualMachine", "virtualmachine", **params)

    def destroy_virtual_machine(self, id: str, expunge: bool = True) -> dict:
        return self._async("destroyVirtualMachine", "virtualmachine", id=id, expunge=expunge)

    # -- CKS ---------------------------------------------------------------

    def list_kubernetes_clusters(self, **params: Any) -> List[dict]:
        return self._list("listKubernetesClusters", "kubernetescluster", **params)

    def create_kubernetes_cluster(self, **params: Any) -> dict:
        return self._async("createKubernetesCluster", "kubernetescluster", **params)

    def delete_kubernetes_cluster(self, id: str) -> dict:
        return self._async("deleteKubernetesCluster", id=id)

    def add_virtual_machines_to_kubernetes_cluster(self, id: str, virtualmachineids: List[str]) -> dict:
        return self._async("addVirtualMachinesToKubernetesCluster", id=id, virtualmachineids=virtualmachineids)

    def remove_virtual_machines_from_kubernetes_cluster(self, id: str, virtualmachineids: List[str]) -> dict:
        return self._async("removeVirtualMachinesFromKubernetesCluster", id=id, virtualmachineids=virtualmachineids)
