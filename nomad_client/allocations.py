"""Allocation endpoints, log access and allocation status waits."""

from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Literal

import anyio.abc

from . import logs
from ._base import APIModule
from .exceptions import NomadError
from .logs import LOG_POLL_INTERVAL_SECONDS, LogChunk, LogType
from .models import (
    Allocation,
    AllocationSummary,
    CpuUsage,
    FormattedStats,
    ListResponse,
    MemoryUsage,
    QueryOptions,
    TaskSummary,
    TaskUsage,
    WriteResponse,
    from_nanoseconds,
)
from .polling import PollHandle, PollResult
from .waiters import (
    ALLOCATION_TERMINAL_STATUSES,
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    STATUS_POLL_INTERVAL_SECONDS,
    WaitResult,
    wait_for_status,
)

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


def _memory_percent(memory: dict[str, Any]) -> float:
    usage = memory.get("Usage") or 0
    return memory.get("RSS", 0) / usage * 100 if usage else 0.0


class AllocationsAPI(APIModule):
    async def list(
        self,
        options: QueryOptions | None = None,
        job: str | None = None,
        node: str | None = None,
        resources: bool = False,
    ) -> ListResponse[Allocation]:
        params = self._params(options, job=job, node=node, resources=resources or None)
        return await self._list("/v1/allocations", Allocation, params)

    async def get(self, alloc_id: str) -> Allocation:
        return Allocation.model_validate(await self._get(f"/v1/allocation/{alloc_id}"))

    async def stop(self, alloc_id: str) -> WriteResponse:
        logger.info(f"Stopping allocation {alloc_id[:8]}")
        return await self._write("POST", f"/v1/allocation/{alloc_id}/stop")

    async def restart(
        self, alloc_id: str, task_name: str | None = None, all_tasks: bool = False
    ) -> Any:
        """Restarts one task, or every task, of an allocation in place."""
        body: dict[str, Any] = {}
        if task_name:
            body["TaskName"] = task_name
        if all_tasks:
            body["AllTasks"] = True
        logger.info(f"Restarting allocation {alloc_id[:8]}")
        return await self._post(f"/v1/client/allocation/{alloc_id}/restart", body)

    async def stats(self, alloc_id: str) -> dict[str, Any]:
        return await self._get(f"/v1/client/allocation/{alloc_id}/stats") or {}

    async def logs(
        self,
        alloc_id: str,
        task_name: str,
        log_type: LogType = "stdout",
        offset: int = 0,
        origin: Literal["start", "end"] = "start",
    ) -> LogChunk:
        """Reads one chunk of a task's log starting at `offset`."""
        return await logs.read_log_chunk(
            self._transport, alloc_id, task_name, log_type, offset, origin
        )

    async def exec(
        self, alloc_id: str, task_name: str, command: list[str], tty: bool = False
    ) -> Any:
        body = {"Task": task_name, "Command": command, "Tty": tty}
        return await self._post(f"/v1/client/allocation/{alloc_id}/exec", body)

    async def signal(
        self, alloc_id: str, signal: str, task_name: str | None = None
    ) -> Any:
        body: dict[str, Any] = {"Signal": signal}
        if task_name:
            body["Task"] = task_name
        return await self._post(f"/v1/client/allocation/{alloc_id}/signal", body)

    async def services(self, alloc_id: str) -> list[dict[str, Any]]:
        return await self._get(f"/v1/allocation/{alloc_id}/services") or []

    async def get_simple_logs(
        self, alloc_id: str, task_name: str, log_type: LogType = "stdout"
    ) -> str:
        """Returns the log output currently available for a task as text."""
        return (await self.logs(alloc_id, task_name, log_type)).text

    async def stream_logs(
        self,
        alloc_id: str,
        task_name: str,
        log_type: LogType = "stdout",
        on_data: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        *,
        handle: PollHandle | None = None,
        interval: float = LOG_POLL_INTERVAL_SECONDS,
    ) -> PollResult[LogChunk]:
        """Tails a task's log until `handle` is cancelled or a read fails.

        See `nomad_client.logs.stream_logs`.
        """
        return await logs.stream_logs(
            self._transport,
            alloc_id,
            task_name,
            log_type,
            on_data,
            on_error,
            handle=handle,
            interval=interval,
        )

    def start_log_stream(
        self,
        task_group: anyio.abc.TaskGroup,
        alloc_id: str,
        task_name: str,
        log_type: LogType = "stdout",
        on_data: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        *,
        interval: float = LOG_POLL_INTERVAL_SECONDS,
    ) -> Callable[[], None]:
        """Starts tailing a task's log in `task_group` and returns a stop function."""
        return logs.start_log_stream(
            task_group,
            self._transport,
            alloc_id,
            task_name,
            log_type,
            on_data,
            on_error,
            interval=interval,
        )

    async def execute_command(
        self, alloc_id: str, task_name: str, command: list[str]
    ) -> str:
        """Runs a command in a task and returns its decoded stdout."""
        result = await self.exec(alloc_id, task_name, command)
        if isinstance(result, dict) and result.get("stdout"):
            return base64.b64decode(result["stdout"]).decode("utf-8", errors="replace")
        return ""

    async def is_healthy(self, alloc_id: str) -> bool:
        """Checks that an allocation is running and its tasks are healthy.

        Deployment health wins when Nomad reports it. Request failures count
        as unhealthy.
        """
        try:
            allocation = await self.get(alloc_id)
        except NomadError:
            logger.debug(f"Could not check allocation {alloc_id[:8]}", exc_info=True)
            return False

        if allocation.client_status != "running":
            return False
        if allocation.deployment_status is not None:
            return allocation.deployment_status.healthy is True
        return all(
            state.state == "running" and not state.failed
            for state in (allocation.task_states or {}).values()
        )

    async def wait_for_status_result(
        self,
        alloc_id: str,
        desired_status: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
        handle: PollHandle | None = None,
    ) -> WaitResult:
        """Waits for an allocation's client status to become `desired_status`.

        Stops early on `complete`, `failed` or `lost`. An allocation that
        disappears while waiting for `complete` counts as complete, since
        Nomad garbage-collects finished allocations.
        """

        async def probe() -> str:
            return (await self.get(alloc_id)).client_status

        return await wait_for_status(
            probe,
            desired_status,
            ALLOCATION_TERMINAL_STATUSES,
            timeout=timeout,
            interval=interval,
            handle=handle,
            complete_when_gone=True,
            subject=f"Allocation {alloc_id[:8]}",
        )

    async def wait_for_status(
        self,
        alloc_id: str,
        desired_status: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
    ) -> bool:
        result = await self.wait_for_status_result(
            alloc_id, desired_status, timeout, interval
        )
        return result.succeeded

    async def get_summary(self, alloc_id: str) -> AllocationSummary:
        allocation = await self.get(alloc_id)
        return AllocationSummary(
            id=allocation.id,
            name=allocation.name,
            status=allocation.client_status,
            job_id=allocation.job_id,
            node_id=allocation.node_id,
            task_group=allocation.task_group,
            tasks=[
                TaskSummary(
                    name=name,
                    state=state.state,
                    failed=state.failed,
                    restarts=state.restarts,
                )
                for name, state in (allocation.task_states or {}).items()
            ],
            created_at=from_nanoseconds(allocation.create_time),
            modified_at=from_nanoseconds(allocation.modify_time),
        )

    async def get_formatted_stats(self, alloc_id: str) -> FormattedStats:
        """Returns allocation resource usage with memory in MiB."""
        stats = await self.stats(alloc_id)
        usage = stats.get("ResourceUsage") or {}
        cpu = usage.get("CpuStats") or {}
        memory = usage.get("MemoryStats") or {}

        tasks = {}
        for task_name, task_stats in (stats.get("Tasks") or {}).items():
            task_usage = task_stats.get("ResourceUsage") or {}
            task_memory = task_usage.get("MemoryStats") or {}
            tasks[task_name] = TaskUsage(
                cpu_percent=(task_usage.get("CpuStats") or {}).get("Percent", 0.0),
                memory_used=round(task_memory.get("RSS", 0) / _MIB),
                memory_percent=_memory_percent(task_memory),
            )

        return FormattedStats(
            cpu=CpuUsage(
                percent=cpu.get("Percent", 0.0), total=cpu.get("TotalTicks", 0.0)
            ),
            memory=MemoryUsage(
                used=round(memory.get("RSS", 0) / _MIB),
                total=round(memory.get("Usage", 0) / _MIB),
                percent=_memory_percent(memory),
            ),
            tasks=tasks,
        )
