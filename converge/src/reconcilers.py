from __future__ import annotations

import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


def log_deployment_state(key: str, deployment: Any) -> None:
    """Reconciler that reports what the cache currently says about a Deployment.

    A real reconciler would also compare ``metadata.uid`` to notice that a
    Deployment was deleted and recreated under the same name.
    """
    if deployment is None:
        LOGGER.info("Deployment %s does not exist anymore", key)
        return

    metadata = getattr(deployment, "metadata", None)
    spec = getattr(deployment, "spec", None)
    status = getattr(deployment, "status", None)
    LOGGER.info(
        "Sync/Add/Update for deployment %s (replicas desired=%s ready=%s)",
        getattr(metadata, "name", key),
        getattr(spec, "replicas", None),
        getattr(status, "ready_replicas", None),
    )
