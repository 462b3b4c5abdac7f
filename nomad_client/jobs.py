"""Job endpoints: registration, inspection, scaling and deployment waits."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from ._base import APIModule, gather
from .exceptions import NomadError, NomadNotFoundError
from .models import (
    Allocation,
    AllocationCounts,
    Evaluation,
    HCLValidation,
    Job,
    JobHealth,
    JobInfo,
    JobPlan,
    JobStatus,
    JobSummary,
    JobValidation,
    ListResponse,
    QueryOptions,
    WriteResponse,
)
from .polling import PollHandle
from .waiters import (
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    JOB_TERMINAL_STATUSES,
    STATUS_POLL_INTERVAL_SECONDS,
    WaitResult,
    wait_for_status,
)

logger = logging.getLogger(__name__)

# Synthetic status reported while waiting for a deployment to settle
DEPLOYED_STATUS = "deployed"

JobSpec = Job | dict[str, Any]


def _job_payload(job: JobSpec) -> dict[str, Any]:
    return job.to_api() if isinstance(job, Job) else dict(job)


class JobsAPI(APIModule):
    async def list(self, options: QueryOptions | None = None) -> ListResponse[Job]:
        return await self._list("/v1/jobs", Job, self._params(options))

    async def get(self, job_id: str, options: QueryOptions | None = None) -> Job:
        return Job.model_validate(
            await self._get(f"/v1/job/{job_id}", self._params(options))
        )

    async def create(self, job: JobSpec) -> WriteResponse:
        """Registers a new job."""
        payload = _job_payload(job)
        logger.info(f"Registering Nomad job {payload.get('ID')!r}")
        return await self._write("POST", "/v1/jobs", {"Job": payload})

    async def update(self, job: JobSpec) -> WriteResponse:
        """Registers a new version of an existing job."""
        payload = _job_payload(job)
        logger.info(f"Updating Nomad job {payload.get('ID')!r}")
        return await self._write("POST", f"/v1/job/{payload['ID']}", {"Job": payload})

    async def delete(self, job_id: str, purge: bool = False) -> WriteResponse:
        """Deregisters a job, purging it from the state store if `purge`."""
        return await self._write(
            "DELETE", f"/v1/job/{job_id}", params=self._params(purge=purge or None)
        )

    async def stop(self, job_id: str, purge: bool = False) -> WriteResponse:
        logger.info(f"Stopping Nomad job {job_id!r}" + (" (purge)" if purge else ""))
        return await self.delete(job_id, purge)

    async def plan(self, job: JobSpec, diff: bool = True) -> JobPlan:
        """Dry-runs a job registration and returns the scheduler's plan."""
        payload = _job_payload(job)
        data = await self._post(
            f"/v1/job/{payload['ID']}/plan", {"Job": payload, "Diff": diff}
        )
        return JobPlan.model_validate(data or {})

    async def dispatch(
        self,
        job_id: str,
        payload: Any = None,
        meta: dict[str, str] | None = None,
    ) -> WriteResponse:
        """Dispatches an instance of a parameterized job.

        Args:
            job_id: The parameterized job to dispatch.
            payload: JSON-serializable input, sent base64 encoded.
            meta: Metadata keys declared by the parameterized job.
        """
        body: dict[str, Any] = {}
        if payload is not None:
            body["Payload"] = base64.b64encode(json.dumps(payload).encode()).decode()
        if meta:
            body["Meta"] = meta
        return await self._write("POST", f"/v1/job/{job_id}/dispatch", body)

    async def revert(
        self, job_id: str, version: int, enforce_prior_version: int | None = None
    ) -> WriteResponse:
        body: dict[str, Any] = {"JobID": job_id, "JobVersion": version}
        if enforce_prior_version is not None:
            body["EnforcePriorVersion"] = enforce_prior_version
        return await self._write("POST", f"/v1/job/{job_id}/revert", body)

    async def stable(
        self, job_id: str, version: int, stable: bool = True
    ) -> WriteResponse:
        body = {"JobID": job_id, "JobVersion": version, "Stable": stable}
        return await self._write("POST", f"/v1/job/{job_id}/stable", body)

    async def summary(self, job_id: str) -> JobSummary:
        return JobSummary.model_validate(await self._get(f"/v1/job/{job_id}/summary"))

    async def versions(self, job_id: str, diffs: bool = False) -> list[Job]:
        data = await self._get(
            f"/v1/job/{job_id}/versions", self._params(diffs=diffs or None)
        )
        return [Job.model_validate(v) for v in (data or {}).get("Versions") or []]

    async def evaluations(self, job_id: str) -> list[Evaluation]:
        data = await self._get(f"/v1/job/{job_id}/evaluations")
        return [Evaluation.model_validate(e) for e in data or []]

    async def allocations(self, job_id: str) -> list[Allocation]:
        data = await self._get(f"/v1/job/{job_id}/allocations")
        return [Allocation.model_validate(a) for a in data or []]

    async def deployments(self, job_id: str) -> list[dict[str, Any]]:
        return await self._get(f"/v1/job/{job_id}/deployments") or []

    async def scale(self, job_id: str, task_group: str, count: int) -> WriteResponse:
        body = {
            "Count": count,
            "Message": f"Scaling {task_group} to {count} instances",
            "Target": {"Job": job_id, "Group": task_group},
        }
        logger.info(f"Scaling task group {task_group!r} of job {job_id!r} to {count}")
        return await self._write("POST", f"/v1/job/{job_id}/scale", body)

    async def restart(
        self, job_id: str, task_group: str | None = None, all_tasks: bool = False
    ) -> list[str]:
        """Restarts the running allocations of a job in place.

        Args:
            job_id: The job to restart.
            task_group: Only restart allocations of this task group.
            all_tasks: Also restart prestart and poststart tasks.

        Returns:
            The IDs of the allocations that were restarted.
        """
        allocations = [
            alloc
            for alloc in await self.allocations(job_id)
            if alloc.client_status == "running"
            and (task_group is None or alloc.task_group == task_group)
        ]
        for alloc in allocations:
            logger.info(f"Restarting allocation {alloc.id[:8]} of job {job_id!r}")
            await self._post(
                f"/v1/client/allocation/{alloc.id}/restart",
                {"AllTasks": all_tasks} if all_tasks else {},
            )
        return [alloc.id for alloc in allocations]

    async def parse(self, job_hcl: str, canonicalize: bool = True) -> dict[str, Any]:
        """Converts an HCL job specification to its JSON form on the server."""
        return await self._post(
            "/v1/jobs/parse", {"JobHCL": job_hcl, "Canonicalize": canonicalize}
        )

    async def validate(self, job: JobSpec) -> JobValidation:
        data = await self._post("/v1/validate/job", {"Job": _job_payload(job)})
        return JobValidation.model_validate(data or {})

    async def periodic_force(self, job_id: str) -> WriteResponse:
        return await self._write("POST", f"/v1/job/{job_id}/periodic/force")

    async def periodic_info(self, job_id: str) -> dict[str, Any]:
        return await self._get(f"/v1/job/{job_id}/periodic") or {}

    async def parse_and_validate_hcl(
        self, hcl_content: str, canonicalize: bool = True
    ) -> HCLValidation:
        """Parses HCL and validates the resulting job in one step.

        Parse or validation request failures are reported as validation
        errors instead of being raised.
        """
        try:
            parsed = await self.parse(hcl_content, canonicalize) or {}
            # Some agents wrap the job together with parse warnings
            if "Job" in parsed and isinstance(parsed["Job"], dict):
                job = parsed["Job"]
                warnings = list(parsed.get("Warnings") or [])
            else:
                job, warnings = parsed, []
            validation = await self.validate(job)
        except NomadError as exc:
            logger.debug("Could not parse and validate HCL job", exc_info=True)
            return HCLValidation(validation_errors=[str(exc)])

        if isinstance(validation.warnings, str):
            warnings.extend(w for w in validation.warnings.splitlines() if w)
        elif validation.warnings:
            warnings.extend(validation.warnings)

        errors = [
            e.get("Message", str(e)) if isinstance(e, dict) else str(e)
            for e in validation.validation_errors or []
        ]
        if not errors and validation.error:
            errors = [validation.error]
        return HCLValidation(
            job=job, warnings=warnings, validation_errors=errors, is_valid=not errors
        )

    async def get_job_info(self, job_id: str) -> JobInfo:
        """Fetches a job together with everything Nomad tracks about it."""
        job, summary, versions, allocations, deployments, evaluations = await gather(
            lambda: self.get(job_id),
            lambda: self.summary(job_id),
            lambda: self.versions(job_id),
            lambda: self.allocations(job_id),
            lambda: self.deployments(job_id),
            lambda: self.evaluations(job_id),
        )
        info = JobInfo(
            job=job,
            summary=summary,
            versions=versions,
            allocations=allocations,
            deployments=deployments,
            evaluations=evaluations,
        )
        if job.periodic and job.periodic.get("Enabled"):
            try:
                info.periodic_info = await self.periodic_info(job_id)
            except NomadError:
                logger.debug(
                    f"Periodic info unavailable for job {job_id!r}", exc_info=True
                )
        return info

    async def is_healthy(self, job_id: str) -> JobHealth:
        """Reports whether a job is running with no failed or lost allocations.

        Request failures yield an unhealthy report with status `error`.
        """
        try:
            job, allocations = await gather(
                lambda: self.get(job_id), lambda: self.allocations(job_id)
            )
        except NomadError:
            logger.debug(f"Could not check health of job {job_id!r}", exc_info=True)
            return JobHealth(is_healthy=False, status="error")

        counts = AllocationCounts.from_allocations(allocations)
        status = job.status or "unknown"
        return JobHealth(
            is_healthy=(
                status == "running"
                and counts.running > 0
                and counts.failed == 0
                and counts.lost == 0
            ),
            status=status,
            running_allocations=counts.running,
            total_allocations=counts.total,
            details=counts,
        )

    async def deploy(self, job: JobSpec) -> WriteResponse:
        """Updates the job if it is already registered, creates it otherwise."""
        payload = _job_payload(job)
        try:
            await self.get(payload["ID"])
        except NomadNotFoundError:
            return await self.create(payload)
        return await self.update(payload)

    async def get_status(self, job_id: str) -> JobStatus:
        job, summary = await gather(
            lambda: self.get(job_id), lambda: self.summary(job_id)
        )
        return JobStatus(status=job.status or "unknown", summary=summary)

    async def wait_for_deployment_result(
        self,
        job_id: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
        handle: PollHandle | None = None,
    ) -> WaitResult:
        """Waits until every desired allocation of a running job is running.

        The job counts as deployed once its status is `running` and the
        running allocations equal running plus queued plus starting, with at
        least one running.
        """

        async def probe() -> str:
            status = await self.get_status(job_id)
            summary = status.summary
            if (
                status.status == "running"
                and summary.running > 0
                and summary.running == summary.desired
            ):
                return DEPLOYED_STATUS
            return status.status

        return await wait_for_status(
            probe,
            DEPLOYED_STATUS,
            JOB_TERMINAL_STATUSES,
            timeout=timeout,
            interval=interval,
            handle=handle,
            subject=f"Nomad job {job_id!r}",
        )

    async def wait_for_deployment(
        self,
        job_id: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
    ) -> bool:
        result = await self.wait_for_deployment_result(job_id, timeout, interval)
        return result.succeeded
