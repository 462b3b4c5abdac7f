from __future__ import annotations

import logging
from typing import Any

from ._base import APIModule, gather
from .exceptions import NomadError
from .models import (
    Allocation,
    Job,
    ListResponse,
    Node,
    NodePool,
    NodePoolSchedulerConfig,
    PoolOverviewEntry,
    PoolsOverview,
    PoolUtilization,
    QueryOptions,
    WriteResponse,
)

logger = logging.getLogger(__name__)

NodePoolSpec = NodePool | dict[str, Any]


def _pool_payload(pool: NodePoolSpec) -> dict[str, Any]:
    return pool.to_api() if isinstance(pool, NodePool) else dict(pool)


class NodePoolsAPI(APIModule):
    async def list(self, options: QueryOptions | None = None) -> ListResponse[NodePool]:
        return await self._list("/v1/node/pools", NodePool, self._params(options))

    async def get(self, name: str, options: QueryOptions | None = None) -> NodePool:
        return NodePool.model_validate(
            await self._get(f"/v1/node/pool/{name}", self._params(options))
        )

    async def create(self, pool: NodePoolSpec) -> WriteResponse:
        payload = _pool_payload(pool)
        logger.info(f"Creating Nomad node pool {payload.get('Name')!r}")
        return await self._write("POST", "/v1/node/pools", payload)

    async def update(self, name: str, changes: NodePoolSpec) -> WriteResponse:
        """Writes `changes` over the node pool `name`.

        Nomad upserts node pools, so fields missing from `changes` are reset.
        """
        payload = {**_pool_payload(changes), "Name": name}
        return await self._write("POST", "/v1/node/pools", payload)

    async def delete(self, name: str) -> WriteResponse:
        logger.info(f"Deleting Nomad node pool {name!r}")
        return await self._write("DELETE", f"/v1/node/pool/{name}")

    async def get_builtin_pools(self) -> list[NodePool]:
        return [pool for pool in (await self.list()).items if pool.is_builtin]

    async def create_with_scheduler(
        self,
        name: str,
        description: str,
        scheduler_config: NodePoolSchedulerConfig,
        meta: dict[str, str] | None = None,
    ) -> WriteResponse:
        return await self.create(
            NodePool(
                name=name,
                description=description,
                scheduler_configuration=scheduler_config,
                meta=meta,
            )
        )

    async def get_nodes_in_pool(self, name: str) -> list[Node]:
        data = await self._get(f"/v1/node/pool/{name}/nodes", {"resources": "true"})
        return [Node.model_validate(node) for node in data or []]

    async def get_jobs_in_pool(self, name: str) -> list[Job]:
        data = await self._get(f"/v1/node/pool/{name}/jobs")
        return [Job.model_validate(job) for job in data or []]

    async def get_pool_utilization(self, name: str) -> PoolUtilization:
        """Sums node capacity against the resources of active allocations.

        Nodes whose allocations cannot be read are left out of the totals,
        including their capacity.
        """
        pool, nodes, jobs = await gather(
            lambda: self.get(name),
            lambda: self.get_nodes_in_pool(name),
            lambda: self.get_jobs_in_pool(name),
        )

        allocations_count = 0
        total_cpu = total_memory = used_cpu = used_memory = 0
        for node in nodes:
            try:
                data = await self._get(f"/v1/node/{node.id}/allocations")
            except NomadError:
                logger.debug(
                    f"Could not read allocations of node {node.id[:8]}", exc_info=True
                )
                continue
            allocations = [Allocation.model_validate(a) for a in data or []]
            allocations_count += len(allocations)

            resources = node.node_resources or {}
            total_cpu += (resources.get("Cpu") or {}).get("CpuShares", 0)
            total_memory += (resources.get("Memory") or {}).get("MemoryMB", 0)

            for alloc in allocations:
                if alloc.client_status in ("running", "pending") and alloc.resources:
                    used_cpu += alloc.resources.get("CPU", 0)
                    used_memory += alloc.resources.get("MemoryMB", 0)

        return PoolUtilization(
            pool=pool,
            nodes_count=len(nodes),
            jobs_count=len(jobs),
            allocations_count=allocations_count,
            cpu_percent=used_cpu / total_cpu * 100 if total_cpu else 0.0,
            memory_percent=used_memory / total_memory * 100 if total_memory else 0.0,
        )

    async def create_default_pool(
        self, name: str, description: str, meta: dict[str, str] | None = None
    ) -> WriteResponse:
        """Creates a bin-packing pool without memory oversubscription."""
        return await self.create_with_scheduler(
            name,
            description,
            NodePoolSchedulerConfig(
                scheduler_algorithm="binpack", memory_oversubscription_enabled=False
            ),
            meta,
        )

    async def create_ha_pool(
        self, name: str, description: str, meta: dict[str, str] | None = None
    ) -> WriteResponse:
        """Creates a pool that spreads allocations across nodes."""
        return await self.create_with_scheduler(
            name,
            description,
            NodePoolSchedulerConfig(
                scheduler_algorithm="spread", memory_oversubscription_enabled=False
            ),
            {
                **(meta or {}),
                "pool-type": "high-availability",
                "scheduler-preference": "spread",
            },
        )

    async def create_dense_pool(
        self,
        name: str,
        description: str,
        enable_oversubscription: bool = True,
        meta: dict[str, str] | None = None,
    ) -> WriteResponse:
        """Creates a bin-packing pool, oversubscribing memory by default."""
        return await self.create_with_scheduler(
            name,
            description,
            NodePoolSchedulerConfig(
                scheduler_algorithm="binpack",
                memory_oversubscription_enabled=enable_oversubscription,
            ),
            {
                **(meta or {}),
                "pool-type": "high-density",
                "scheduler-preference": "binpack",
            },
        )

    async def get_pools_overview(self) -> PoolsOverview:
        pools = (await self.list()).items
        entries = []
        for pool in pools:
            try:
                nodes_count = len(await self.get_nodes_in_pool(pool.name))
            except NomadError:
                logger.debug(f"Could not list nodes in pool {pool.name!r}", exc_info=True)
                nodes_count = 0
            scheduler = pool.scheduler_configuration or NodePoolSchedulerConfig()
            entries.append(
                PoolOverviewEntry(
                    name=pool.name,
                    nodes_count=nodes_count,
                    scheduler_algorithm=scheduler.scheduler_algorithm or "binpack",
                    memory_oversubscription=bool(
                        scheduler.memory_oversubscription_enabled
                    ),
                )
            )

        builtin = sum(1 for pool in pools if pool.is_builtin)
        return PoolsOverview(
            total_pools=len(pools),
            builtin_pools=builtin,
            custom_pools=len(pools) - builtin,
            pools=entries,
        )
