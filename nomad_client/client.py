"""
The entry point that wires credentials, the transport and every API module.

    async with NomadClient(NomadCredentials(address="http://127.0.0.1:4646")) as client:
        await client.jobs.deploy(job)
        deployed = await client.jobs.wait_for_deployment(job["ID"])
"""

from __future__ import annotations

import logging
from typing import Any

from .allocations import AllocationsAPI
from .credentials import NomadCredentials
from .exceptions import NomadError
from .jobs import JobsAPI
from .models import ClusterInfo, HealthStatus
from .namespaces import NamespacesAPI
from .node_pools import NodePoolsAPI
from .nodes import NodesAPI
from .polling import PollHandle
from .tasks import TasksAPI
from .transport import HttpxTransport, Transport
from .waiters import STATUS_POLL_INTERVAL_SECONDS, WaitResult, wait_for_status

logger = logging.getLogger(__name__)

# Seconds to wait for a stopped job's allocations to go away
CLEANUP_TIMEOUT_SECONDS = 60

_CLEANED_STATUS = "cleaned"


def build_transport(credentials: NomadCredentials) -> HttpxTransport:
    """Creates an `HttpxTransport` from connection settings."""
    return HttpxTransport(
        **credentials.httpx_kwargs(),
        headers=credentials.auth_headers(),
        params=credentials.default_params(),
    )


class NomadClient:
    """Typed async client for the Nomad HTTP API.

    Args:
        credentials: Connection settings. Read from the environment if omitted.
        transport: A transport to use instead of one built from `credentials`.
            The client does not close transports it did not create.

    Attributes:
        jobs: Job endpoints.
        allocations: Allocation endpoints.
        tasks: Task-level helpers over allocations.
        namespaces: Namespace endpoints.
        nodes: Client node endpoints.
        node_pools: Node pool endpoints.
    """

    def __init__(
        self,
        credentials: NomadCredentials | None = None,
        transport: Transport | None = None,
    ):
        self.credentials = credentials or NomadCredentials()
        self._owns_transport = transport is None
        self._attach(transport or build_transport(self.credentials))

    def _attach(self, transport: Transport) -> None:
        self.transport = transport
        self.jobs = JobsAPI(transport)
        self.allocations = AllocationsAPI(transport)
        self.tasks = TasksAPI(transport)
        self.namespaces = NamespacesAPI(transport)
        self.nodes = NodesAPI(transport)
        self.node_pools = NodePoolsAPI(transport)

    async def _agent_self(self) -> dict[str, Any]:
        response = await self.transport.request("GET", "/v1/agent/self")
        return response.data or {}

    async def ping(self) -> bool:
        """Checks that the agent answers and knows a cluster leader."""
        try:
            await self.transport.request("GET", "/v1/status/leader")
        except NomadError:
            logger.debug(
                f"Nomad agent at {self.credentials.address} did not answer",
                exc_info=True,
            )
            return False
        return True

    async def get_version(self) -> str:
        try:
            agent = await self._agent_self()
        except NomadError:
            logger.debug("Could not read Nomad agent version", exc_info=True)
            return "unknown"
        return ((agent.get("stats") or {}).get("nomad") or {}).get("version", "unknown")

    async def health_check(self) -> HealthStatus:
        """Reports leader election, server peers and registered clients."""
        try:
            leader = (await self.transport.request("GET", "/v1/status/leader")).data
            peers = (await self.transport.request("GET", "/v1/status/peers")).data
            nodes = (await self.transport.request("GET", "/v1/nodes")).data
        except NomadError:
            logger.debug("Nomad health check failed", exc_info=True)
            return HealthStatus(
                healthy=False,
                leader=False,
                issues=["Failed to connect to Nomad cluster"],
            )

        issues = []
        if not leader:
            issues.append("No leader elected")
        if not nodes:
            issues.append("No clients available")
        return HealthStatus(
            healthy=bool(leader),
            leader=bool(leader),
            peers=len(peers or []),
            servers=len(peers or []),
            clients=len(nodes or []),
            issues=issues,
        )

    async def get_cluster_info(self) -> ClusterInfo:
        try:
            agent = await self._agent_self()
        except NomadError:
            logger.debug("Could not read Nomad cluster info", exc_info=True)
            return ClusterInfo()

        config = agent.get("config") or {}
        nomad_stats = (agent.get("stats") or {}).get("nomad") or {}
        defaults = ClusterInfo()
        return ClusterInfo(
            name=config.get("name") or defaults.name,
            region=config.get("region") or defaults.region,
            datacenter=config.get("datacenter") or defaults.datacenter,
            version=nomad_stats.get("version") or defaults.version,
            build=nomad_stats.get("build") or defaults.build,
            revision=nomad_stats.get("revision") or defaults.revision,
        )

    async def stop_and_cleanup_result(
        self,
        job_id: str,
        purge: bool = False,
        timeout: float = CLEANUP_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
        handle: PollHandle | None = None,
    ) -> WaitResult:
        """Stops a job and waits until none of its allocations are active.

        Raises:
            NomadRequestError: If the stop request itself fails.
        """
        await self.jobs.stop(job_id, purge)

        async def probe() -> str:
            allocations = await self.jobs.allocations(job_id)
            active = [
                a for a in allocations if a.client_status in ("running", "pending")
            ]
            return f"{len(active)} active" if active else _CLEANED_STATUS

        return await wait_for_status(
            probe,
            _CLEANED_STATUS,
            timeout=timeout,
            interval=interval,
            handle=handle,
            subject=f"Allocations of stopped job {job_id!r}",
        )

    async def stop_and_cleanup(
        self,
        job_id: str,
        purge: bool = False,
        timeout: float = CLEANUP_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
    ) -> bool:
        result = await self.stop_and_cleanup_result(job_id, purge, timeout, interval)
        return result.succeeded

    async def update_config(self, **changes: Any) -> None:
        """Replaces the credentials and reconnects with the new settings.

        Args:
            **changes: `NomadCredentials` fields to override.
        """
        credentials = NomadCredentials(**{**self.credentials.model_dump(), **changes})
        if self._owns_transport:
            await self.close()
        self.credentials = credentials
        self._owns_transport = True
        self._attach(build_transport(credentials))
        logger.info(f"Reconfigured Nomad client for {credentials.address}")

    async def close(self) -> None:
        if self._owns_transport and isinstance(self.transport, HttpxTransport):
            await self.transport.aclose()

    async def __aenter__(self) -> "NomadClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
