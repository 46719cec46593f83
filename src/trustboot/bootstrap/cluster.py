"""Environment reconciler: make sure the local cluster exists and is reachable."""
from __future__ import annotations

import logging

from ..models import ClusterHandle
from ..providers.kind import KindProvider
from ..providers.kubectl import KubectlProvider

LOGGER = logging.getLogger(__name__)


def ensure_cluster(
    kind: KindProvider,
    kubectl: KubectlProvider,
    *,
    name: str,
    node_image: str,
    wait_seconds: float,
) -> ClusterHandle:
    """Reuse cluster *name* when it exists, otherwise create it.

    An existing cluster is never mutated. In both cases the control plane
    must answer ``cluster-info`` before the handle is returned.
    """
    context = f"kind-{name}"
    created = False
    if kind.cluster_exists(name):
        LOGGER.info("Reusing existing cluster %s", name)
    else:
        LOGGER.info("Creating cluster %s from %s", name, node_image)
        kind.create_cluster(name, node_image=node_image, wait_seconds=wait_seconds)
        created = True
    kubectl.cluster_info(context)
    return ClusterHandle(name=name, node_image=node_image, context=context, created=created)


def delete_cluster(kind: KindProvider, name: str) -> bool:
    """Delete cluster *name*; return ``False`` when there was nothing to delete."""
    if not kind.cluster_exists(name):
        return False
    kind.delete_cluster(name)
    return True


__all__ = ["delete_cluster", "ensure_cluster"]
