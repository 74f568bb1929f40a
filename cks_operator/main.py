"""Entry point: configure logging and hand control to kopf."""
from __future__ import annotations

import logging
import os
import socket
import sys

import kopf

from . import handlers  # noqa: F401  (registers the kopf handlers)
from .config import LOG_LEVEL, WATCH_NAMESPACE


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure logging with hostname and pod name on every record."""
    log_format = "%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s"
    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)
    logging.info("Logging configured at %s level", level)


def main() -> None:
    configure_logging()

    identity = os.environ.get("POD_NAME", socket.gethostname())
    if WATCH_NAMESPACE:
        logging.info("CKS operator watching namespace %s", WATCH_NAMESPACE)
        scope = {"namespaces": [WATCH_NAMESPACE]}
    else:
        logging.info("CKS operator watching all namespaces")
        scope = {"clusterwide": True}

    # Peering keeps a single active replica when several are deployed.
    kopf.run(
        peering_name=os.environ.get("KOPF_PEERING", "cks-operator"),
        identity=identity,
        priority=0,
        **scope,
    )


if __name__ == "__main__":
    main()
