"""Load and apply the operator's CustomResourceDefinitions."""
from __future__ import annotations

import logging
from importlib import resources
from typing import List

import kopf
import yaml
from kubernetes.client import ApiextensionsV1Api, ApiException

logger = logging.getLogger(__name__)


def load_crd_manifests() -> List[dict]:
    text = resources.files(__package__).joinpath("manifests/crds.yaml").read_text()
    return [doc for doc in yaml.safe_load_all(text) if doc]


def ensure_crds(apiext: ApiextensionsV1Api) -> None:
    """Create every CRD the operator serves; an existing one is left alone."""
    for manifest in load_crd_manifests():
        name = manifest["metadata"]["name"]
        try:
            apiext.create_custom_resource_definition(body=manifest)
            logger.info("Applied CRD %s", name)
        except ApiException as exc:
            if exc.status == 409:  # already present
                logger.debug("CRD %s already present", name)
            elif exc.status == 429:
                raise kopf.TemporaryError("API busy, retrying", delay=10) from exc
            else:
                raise kopf.PermanentError(f"CRD {name} creation failed: {exc.status} {exc.reason}") from exc
