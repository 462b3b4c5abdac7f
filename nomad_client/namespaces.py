from __future__ import annotations

import logging
from typing import Any

from ._base import APIModule, gather
from .exceptions import NomadError
from .models import (
    Allocation,
    AllocationCounts,
    Job,
    JobCounts,
    ListResponse,
    Namespace,
    NamespaceUsage,
    QueryOptions,
    WriteResponse,
)

logger = logging.getLogger(__name__)

NamespaceSpec = Namespace | dict[str, Any]


def _namespace_payload(namespace: NamespaceSpec) -> dict[str, Any]:
    return namespace.to_api() if isinstance(namespace, Namespace) else dict(namespace)


class NamespacesAPI(APIModule):
    async def list(
        self, options: QueryOptions | None = None
    ) -> ListResponse[Namespace]:
        return await self._list("/v1/namespaces", Namespace, self._params(options))

    async def get(self, name: str) -> Namespace:
        return Namespace.model_validate(await self._get(f"/v1/namespace/{name}"))

    async def create(self, namespace: NamespaceSpec) -> WriteResponse:
        payload = _namespace_payload(namespace)
        logger.info(f"Creating Nomad namespace {payload.get('Name')!r}")
        return await self._write("POST", "/v1/namespaces", payload)

    async def update(self, namespace: NamespaceSpec) -> WriteResponse:
        payload = _namespace_payload(namespace)
        return await self._write("POST", f"/v1/namespace/{payload['Name']}", payload)

    async def delete(self, name: str) -> WriteResponse:
        logger.info(f"Deleting Nomad namespace {name!r}")
        return await self._write("DELETE", f"/v1/namespace/{name}")

    async def exists(self, name: str) -> bool:
        try:
            await self.get(name)
        except NomadError:
            logger.debug(f"Namespace {name!r} is not readable", exc_info=True)
            return False
        return True

    async def create_if_not_exists(
        self, namespace: NamespaceSpec
    ) -> WriteResponse | None:
        """Creates the namespace unless it already exists.

        Returns:
            The write response, or None if the namespace already existed.
        """
        payload = _namespace_payload(namespace)
        if await self.exists(payload["Name"]):
            return None
        return await self.create(payload)

    async def get_jobs(self, name: str) -> list[Job]:
        data = await self._get("/v1/jobs", {"namespace": name})
        return [Job.model_validate(job) for job in data or []]

    async def get_allocations(self, name: str) -> list[Allocation]:
        data = await self._get("/v1/allocations", {"namespace": name})
        return [Allocation.model_validate(alloc) for alloc in data or []]

    async def get_usage_stats(self, name: str) -> NamespaceUsage:
        """Counts a namespace's jobs and allocations by status."""
        jobs, allocations = await gather(
            lambda: self.get_jobs(name), lambda: self.get_allocations(name)
        )

        job_counts = JobCounts(total=len(jobs))
        for job in jobs:
            if job.status in ("running", "pending", "dead"):
                setattr(job_counts, job.status, getattr(job_counts, job.status) + 1)

        return NamespaceUsage(
            jobs=job_counts, allocations=AllocationCounts.from_allocations(allocations)
        )
