"""Client node endpoints, drains and cluster-wide node statistics."""

from __future__ import annotations

import logging
from typing import Any

from ._base import APIModule, gather
from .exceptions import NomadError
from .models import (
    Allocation,
    ClusterStats,
    ListResponse,
    Node,
    NodeSchedulingEligibility,
    NodeSummary,
    QueryOptions,
    Utilization,
    WriteResponse,
)
from .polling import PollHandle
from .waiters import (
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    NODE_TERMINAL_STATUSES,
    STATUS_POLL_INTERVAL_SECONDS,
    WaitResult,
    wait_for_status,
)

logger = logging.getLogger(__name__)

# Synthetic status reported once a node no longer has a drain strategy
DRAINED_STATUS = "drained"

_NANOSECONDS_PER_MINUTE = 60 * 1_000_000_000


def _utilization(node: Node, stats: dict[str, Any]) -> Utilization:
    utilization = Utilization()
    if not node.node_resources or not stats:
        return utilization

    total_memory = (node.node_resources.get("Memory") or {}).get("MemoryMB", 0)
    used_memory = (stats.get("Memory") or {}).get("Used", 0) / (1024 * 1024)
    if total_memory > 0:
        utilization.memory = used_memory / total_memory * 100

    cpus = stats.get("CPU") or []
    if cpus:
        utilization.cpu = sum(100 - cpu.get("Idle", 100) for cpu in cpus) / len(cpus)

    disks = stats.get("DiskStats") or []
    if disks:
        utilization.disk = sum(d.get("UsedPercent", 0) for d in disks) / len(disks)
    return utilization


class NodesAPI(APIModule):
    async def list(
        self, options: QueryOptions | None = None, resources: bool = False
    ) -> ListResponse[Node]:
        params = self._params(options, resources=resources or None)
        return await self._list("/v1/nodes", Node, params)

    async def get(self, node_id: str, options: QueryOptions | None = None) -> Node:
        return Node.model_validate(
            await self._get(f"/v1/node/{node_id}", self._params(options))
        )

    async def drain(
        self,
        node_id: str,
        drain_spec: dict[str, Any] | None,
        mark_eligible: bool = False,
    ) -> WriteResponse:
        """Sets or clears a node's drain strategy.

        Args:
            node_id: The node to drain.
            drain_spec: `{"Deadline": <ns>, "IgnoreSystemJobs": <bool>}`, or
                None to cancel a drain in progress.
            mark_eligible: Make the node eligible again when cancelling.
        """
        body = {"DrainSpec": drain_spec, "MarkEligible": mark_eligible}
        return await self._write("POST", f"/v1/node/{node_id}/drain", body)

    async def eligibility(
        self, node_id: str, eligibility: NodeSchedulingEligibility
    ) -> WriteResponse:
        body = {"NodeID": node_id, "Eligibility": eligibility}
        logger.info(f"Marking node {node_id[:8]} {eligibility}")
        return await self._write("POST", f"/v1/node/{node_id}/eligibility", body)

    async def purge(self, node_id: str) -> WriteResponse:
        logger.info(f"Purging node {node_id[:8]}")
        return await self._write("POST", f"/v1/node/{node_id}/purge")

    async def stats(self, node_id: str) -> dict[str, Any]:
        return await self._get("/v1/client/stats", {"node_id": node_id}) or {}

    async def allocations(
        self, node_id: str, options: QueryOptions | None = None
    ) -> list[Allocation]:
        data = await self._get(f"/v1/node/{node_id}/allocations", self._params(options))
        return [Allocation.model_validate(a) for a in data or []]

    async def get_healthy_nodes(self) -> list[Node]:
        return [node for node in (await self.list()).items if node.is_healthy]

    async def get_nodes_by_class(self, node_class: str) -> list[Node]:
        return [n for n in (await self.list()).items if n.node_class == node_class]

    async def get_nodes_by_pool(self, node_pool: str) -> list[Node]:
        return [n for n in (await self.list()).items if n.node_pool == node_pool]

    async def is_node_healthy(self, node_id: str) -> bool:
        try:
            node = await self.get(node_id)
        except NomadError:
            logger.debug(f"Could not check node {node_id[:8]}", exc_info=True)
            return False
        return node.is_healthy

    async def get_node_summary(self, node_id: str) -> NodeSummary:
        """Fetches a node with its allocations and resource utilization.

        Host stats are best-effort: when the client agent cannot be reached
        they are reported empty with zero utilization.
        """
        node, allocations = await gather(
            lambda: self.get(node_id), lambda: self.allocations(node_id)
        )
        try:
            stats = await self.stats(node_id)
        except NomadError:
            logger.debug(f"Host stats unavailable for node {node_id[:8]}", exc_info=True)
            stats = {}

        return NodeSummary(
            node=node,
            stats=stats,
            allocations=allocations,
            is_healthy=node.is_healthy,
            utilization_percent=_utilization(node, stats),
        )

    async def drain_safely(
        self,
        node_id: str,
        deadline_minutes: float = 30,
        ignore_system_jobs: bool = False,
    ) -> WriteResponse:
        """Starts a drain that forces remaining allocations off after a deadline."""
        logger.info(
            f"Draining node {node_id[:8]} with a {deadline_minutes} minute deadline"
        )
        return await self.drain(
            node_id,
            {
                "Deadline": int(deadline_minutes * _NANOSECONDS_PER_MINUTE),
                "IgnoreSystemJobs": ignore_system_jobs,
            },
            mark_eligible=False,
        )

    async def cancel_drain(self, node_id: str) -> WriteResponse:
        logger.info(f"Cancelling drain of node {node_id[:8]}")
        return await self.drain(node_id, None, mark_eligible=True)

    async def mark_ineligible(self, node_id: str) -> WriteResponse:
        return await self.eligibility(node_id, "ineligible")

    async def mark_eligible(self, node_id: str) -> WriteResponse:
        return await self.eligibility(node_id, "eligible")

    async def get_cluster_stats(self) -> ClusterStats:
        nodes = (await self.list()).items
        stats = ClusterStats(total_nodes=len(nodes))
        for node in nodes:
            if node.is_healthy:
                stats.healthy_nodes += 1
            if node.drain:
                stats.draining_nodes += 1
            if node.scheduling_eligibility == "ineligible":
                stats.ineligible_nodes += 1
            if node.status in ("down", "disconnected"):
                stats.down_nodes += 1
            node_class = node.node_class or "default"
            stats.nodes_by_class[node_class] = stats.nodes_by_class.get(node_class, 0) + 1
            pool = node.node_pool or "default"
            stats.nodes_by_pool[pool] = stats.nodes_by_pool.get(pool, 0) + 1
        return stats

    async def wait_for_drain_result(
        self,
        node_id: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
        handle: PollHandle | None = None,
    ) -> WaitResult:
        """Waits until a node reports that its drain has finished.

        A node that goes down while draining ends the wait as terminal.
        """

        async def probe() -> str:
            node = await self.get(node_id)
            if node.status in NODE_TERMINAL_STATUSES:
                return node.status
            return "draining" if node.drain else DRAINED_STATUS

        return await wait_for_status(
            probe,
            DRAINED_STATUS,
            NODE_TERMINAL_STATUSES,
            timeout=timeout,
            interval=interval,
            handle=handle,
            subject=f"Node {node_id[:8]}",
        )

    async def wait_for_drain(
        self,
        node_id: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
    ) -> bool:
        result = await self.wait_for_drain_result(node_id, timeout, interval)
        return result.succeeded
