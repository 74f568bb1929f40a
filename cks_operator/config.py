"""
config.py
---------
Operator configuration. Environment variables (optionally from a ``.env`` file)
take precedence; CloudStack credentials fall back to the INI-style cloud-config
file mounted into the operator pod.
"""
from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure ENV is loaded *early* so everything that relies on os.getenv works.
load_dotenv()

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
INFRA_GROUP = "infrastructure.cluster.x-k8s.io"
INFRA_VERSION = "v1beta1"
CLUSTER_PLURAL = "cloudstackclusters"
MACHINE_PLURAL = "cloudstackmachines"

CLOUD_CONFIG_FILE = os.getenv("CLOUD_CONFIG_FILE", "/config/cloud-config")
WATCH_NAMESPACE: Optional[str] = os.getenv("WATCH_NAMESPACE") or None
RESYNC_INTERVAL = float(os.getenv("RESYNC_INTERVAL", "60"))
BACKOFF_BASE = float(os.getenv("BACKOFF_BASE", "5"))
BACKOFF_MAX = float(os.getenv("BACKOFF_MAX", "300"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def _as_bool(value: str | None, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CloudStackSettings:
    """Connection settings for the CloudStack API."""

    api_url: str
    api_key: str
    secret_key: str
    verify_ssl: bool = True
    timeout: float = 60.0
    async_poll_interval: float = 2.0
    async_timeout: float = 300.0


def _read_cloud_config(path: str) -> dict[str, str]:
    """Return the ``[Global]`` section of *path*, or an empty dict if unreadable."""
    if not Path(path).is_file():
        logger.debug("Cloud config file %s not present", path)
        return {}
    parser = configparser.ConfigParser()
    try:
        parser.read(path)
    except configparser.Error as exc:
        logger.warning("Could not parse cloud config %s: %s", path, exc)
        return {}
    if not parser.has_section("Global"):
        logger.warning("Cloud config %s has no [Global] section", path)
        return {}
    return dict(parser.items("Global"))


def load_cloudstack_settings(config_file: str | None = None) -> CloudStackSettings:
    """Build :class:`CloudStackSettings` from the environment and the cloud-config file.

    Raises ``ValueError`` when the URL or either key cannot be found anywhere.
    """
    file_values = _read_cloud_config(config_file or CLOUD_CONFIG_FILE)

    api_url = os.getenv("CLOUDSTACK_API_URL") or file_values.get("api-url", "")
    api_key = os.getenv("CLOUDSTACK_API_KEY") or file_values.get("api-key", "")
    secret_key = os.getenv("CLOUDSTACK_SECRET_KEY") or file_values.get("secret-key", "")
    verify_raw = os.getenv("CLOUDSTACK_VERIFY_SSL") or file_values.get("verify-ssl")

    missing = [
        name
        for name, value in (
            ("CLOUDSTACK_API_URL", api_url),
            ("CLOUDSTACK_API_KEY", api_key),
            ("CLOUDSTACK_SECRET_KEY", secret_key),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"Missing CloudStack settings: {', '.join(missing)}")

    return CloudStackSettings(
        api_url=api_url,
        api_key=api_key,
        secret_key=secret_key,
        verify_ssl=_as_bool(verify_raw),
        timeout=float(os.getenv("CLOUDSTACK_TIMEOUT", "60")),
        async_poll_interval=float(os.getenv("CLOUDSTACK_ASYNC_POLL_INTERVAL", "2")),
        async_timeout=float(os.getenv("CLOUDSTACK_ASYNC_TIMEOUT", "300")),
    )
