"""Parallel, read-only status snapshot of cluster nodes."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List

from rollctl.errors import ProbeError
from rollctl.utils import address_key

from .context import OperationContext
from .models import NodeStatus, StatusNode
from .probe import NodeStateProbe

logger = logging.getLogger("rollctl.status")


class StatusCollector:
    """Queries every node concurrently, one worker per node."""

    def __init__(self, probe: NodeStateProbe, max_workers: int = 16):
        self.probe = probe
        self.max_workers = max_workers

    def node_status(self, ctx: OperationContext, node: StatusNode) -> NodeStatus:
        status = NodeStatus(
            address=node.address,
            profile=node.profile,
            role=node.role,
            secureboot=node.secureboot,
        )
        if not self.probe.is_reachable(ctx, node.address):
            return status
        status.reachable = True
        try:
            status.version = self.probe.get_version(ctx, node.address)
        except ProbeError as e:
            logger.debug("Version unavailable for %s: %s", node.address, e)
        return status

    def collect(self, ctx: OperationContext, nodes: List[StatusNode]) -> List[NodeStatus]:
        """Return one status per node, sorted by address."""
        ctx.raise_if_cancelled()
        if not nodes:
            return []

        results: List[NodeStatus] = []
        lock = threading.Lock()

        def collect_one(node: StatusNode) -> None:
            status = self.node_status(ctx, node)
            with lock:
                results.append(status)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(nodes))) as executor:
            futures = [executor.submit(collect_one, node) for node in nodes]
            for future in as_completed(futures):
                # Re-raises cancellation from any worker
                future.result()

        return sorted(results, key=lambda s: address_key(s.address))
