"""Ksmtuned controller: reconciles this node's Ksmtuned resource."""

import copy
import logging
from typing import Any, Dict, Optional

from ..config import (
    DEFAULT_KSM_PATH,
    DEFAULT_MEMINFO_PATH,
    KSMTUNED_GROUP,
    KSMTUNED_KIND,
    KSMTUNED_VERSION,
    MONITOR_INTERVAL_SECONDS,
)
from ..errors import RegistrationError
from .ksmtuned import (
    MODE_STANDARD,
    RUN_STOP,
    Ksmtuned,
    KsmtunedSpec,
)

logger = logging.getLogger(__name__)

KSMTUNED_HANDLER = "ksmtuned-controller"
KSMTUNED_REMOVE_HANDLER = "ksmtuned-remove-controller"
NODE_HANDLER = "ksmtuned-node-controller"


def default_ksmtuned(node_name: str) -> Dict[str, Any]:
    """Ksmtuned object created for a node that has none."""
    return {
        "apiVersion": f"{KSMTUNED_GROUP}/{KSMTUNED_VERSION}",
        "kind": KSMTUNED_KIND,
        "metadata": {"name": node_name},
        "spec": {
            "run": RUN_STOP,
            "mode": MODE_STANDARD,
            "thresCoef": 20,
            "mergeAcrossNodes": 1,
        },
    }


class Controller:
    """
    Reconciles the Ksmtuned resource named after this node.

    Holds the Ksmtuned daemon adapter, which must be stopped on shutdown.
    """

    def __init__(self, node_name: str, ksmtuneds, nodes, ksmtuned: Ksmtuned):
        self.node_name = node_name
        self.ksmtuneds = ksmtuneds
        self.nodes = nodes
        self.ksmtuned = ksmtuned

    def on_ksmtuned_changed(self, key: str, obj: Optional[Dict[str, Any]]):
        if obj is None or key != self.node_name:
            return obj
        if obj.get("metadata", {}).get("deletionTimestamp"):
            return obj
        if self.ksmtuned.stopped:
            return obj

        spec = KsmtunedSpec.from_crd(obj)
        self.ksmtuned.apply(spec)

        status = self.ksmtuned.stats().to_status()
        if obj.get("status") == status:
            return obj

        updated = copy.deepcopy(obj)
        updated["status"] = status
        logger.debug(f"Updating status of ksmtuned {key}: {status['ksmdPhase']}")
        return self.ksmtuneds.update_status(updated)

    def on_ksmtuned_removed(self, key: str, obj: Dict[str, Any]):
        if key != self.node_name or self.ksmtuned.stopped:
            return obj
        logger.info(f"Ksmtuned {key} removed, stopping ksmd")
        self.ksmtuned.apply(KsmtunedSpec(run=RUN_STOP))
        return obj

    def on_node_changed(self, key: str, node: Optional[Dict[str, Any]]):
        if node is None or key != self.node_name:
            return node
        if self.ksmtuneds.get(key) is not None:
            return node

        logger.info(f"Creating default ksmtuned for node {key}")
        self.ksmtuneds.create(default_ksmtuned(key))
        return node

    def stop(self) -> None:
        """Stop the ksmtuned daemon. Raises KsmtunedError on failure."""
        self.ksmtuned.stop()


def register(
    ctx,
    node_name: str,
    ksmtuneds,
    nodes,
    ksm_path: str = DEFAULT_KSM_PATH,
    meminfo_path: str = DEFAULT_MEMINFO_PATH,
    monitor_interval: float = MONITOR_INTERVAL_SECONDS,
) -> Controller:
    """
    Register the ksmtuned controller on the Ksmtuned and Node watchers.

    Must be called before the watchers are started.

    Args:
        ctx: Shutdown context of the process
        node_name: Name of the node this process manages
        ksmtuneds: Shared controller for Ksmtuned resources
        nodes: Shared controller for Nodes
        ksm_path: KSM sysfs directory

    Returns:
        The registered Controller; call stop() on it at shutdown
    """
    if not node_name:
        raise RegistrationError("node name must not be empty")

    ksmtuned = Ksmtuned(
        ctx,
        node_name,
        ksm_path=ksm_path,
        meminfo_path=meminfo_path,
        monitor_interval=monitor_interval,
        on_tuned=lambda: ksmtuneds.enqueue(node_name),
    )
    controller = Controller(node_name, ksmtuneds, nodes, ksmtuned)

    try:
        ksmtuneds.on_change(KSMTUNED_HANDLER, controller.on_ksmtuned_changed)
        ksmtuneds.on_remove(KSMTUNED_REMOVE_HANDLER, controller.on_ksmtuned_removed)
        nodes.on_change(NODE_HANDLER, controller.on_node_changed)
    except RuntimeError as e:
        raise RegistrationError(f"failed to register ksmtuned controller: {e}") from e

    logger.info(f"Registered ksmtuned controller for node {node_name}")
    return controller
