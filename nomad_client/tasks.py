"""Task-level views over an allocation: logs, stats, events and state waits."""

from __future__ import annotations

import logging
from typing import Any, Callable

import anyio.abc

from . import logs
from ._base import APIModule, gather
from .exceptions import NomadError, NomadNotFoundError
from .logs import LOG_POLL_INTERVAL_SECONDS, LogChunk, LogType
from .models import Allocation, TaskEvent, TaskLogs, TaskState, TaskStatus
from .polling import PollHandle, PollResult
from .waiters import (
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    STATUS_POLL_INTERVAL_SECONDS,
    TASK_TERMINAL_STATES,
    WaitResult,
    wait_for_status,
)

logger = logging.getLogger(__name__)


def get_exit_code(allocation: Allocation, task_name: str) -> int | None:
    """Extracts a task's exit code from its allocation.

    Args:
        allocation: The allocation holding the task.
        task_name: The task name to look up.

    Returns:
        The exit code of the last `Terminated` event, 0 for a completed
        allocation without one, 1 for a failed or lost allocation without
        one, or None while the allocation is still active.
    """
    state = (allocation.task_states or {}).get(task_name)
    for event in reversed((state.events if state else None) or []):
        if event.type == "Terminated" and event.exit_code is not None:
            return event.exit_code

    if allocation.client_status == "complete":
        return 0
    if allocation.client_status in ("failed", "lost"):
        return 1
    return None


class TasksAPI(APIModule):
    async def _task_state(self, alloc_id: str, task_name: str) -> TaskState:
        data = await self._get(f"/v1/allocation/{alloc_id}")
        allocation = Allocation.model_validate(data)
        state = (allocation.task_states or {}).get(task_name)
        if state is None:
            raise NomadNotFoundError(
                f"Task {task_name!r} not found in allocation {alloc_id[:8]}",
                path=f"/v1/allocation/{alloc_id}",
            )
        return state

    async def _read_all(self, alloc_id: str, task_name: str, log_type: LogType) -> str:
        chunk = await logs.read_log_chunk(self._transport, alloc_id, task_name, log_type)
        return chunk.text

    async def get_logs(
        self, alloc_id: str, task_name: str, log_type: LogType | None = None
    ) -> TaskLogs:
        """Fetches a task's stdout, stderr, or both concurrently when
        `log_type` is omitted."""
        if log_type == "stdout":
            return TaskLogs(stdout=await self._read_all(alloc_id, task_name, "stdout"))
        if log_type == "stderr":
            return TaskLogs(stderr=await self._read_all(alloc_id, task_name, "stderr"))
        stdout, stderr = await gather(
            lambda: self._read_all(alloc_id, task_name, "stdout"),
            lambda: self._read_all(alloc_id, task_name, "stderr"),
        )
        return TaskLogs(stdout=stdout, stderr=stderr)

    async def get_stats(self, alloc_id: str, task_name: str) -> dict[str, Any]:
        data = await self._get(f"/v1/client/allocation/{alloc_id}/stats") or {}
        stats = (data.get("Tasks") or {}).get(task_name)
        if stats is None:
            raise NomadNotFoundError(
                f"No stats for task {task_name!r} in allocation {alloc_id[:8]}",
                path=f"/v1/client/allocation/{alloc_id}/stats",
            )
        return stats

    async def signal(self, alloc_id: str, task_name: str, signal: str) -> None:
        await self._post(
            f"/v1/client/allocation/{alloc_id}/signal",
            {"Task": task_name, "Signal": signal},
        )

    async def exec(self, alloc_id: str, task_name: str, command: list[str]) -> Any:
        return await self._post(
            f"/v1/client/allocation/{alloc_id}/exec",
            {"Task": task_name, "Command": command, "Tty": False},
        )

    async def restart(self, alloc_id: str, task_name: str) -> None:
        logger.info(f"Restarting task {task_name!r} in allocation {alloc_id[:8]}")
        await self._post(
            f"/v1/client/allocation/{alloc_id}/restart", {"TaskName": task_name}
        )

    async def get_events(self, alloc_id: str, task_name: str) -> list[TaskEvent]:
        return (await self._task_state(alloc_id, task_name)).events or []

    async def get_exit_code(self, alloc_id: str, task_name: str) -> int | None:
        allocation = Allocation.model_validate(
            await self._get(f"/v1/allocation/{alloc_id}")
        )
        return get_exit_code(allocation, task_name)

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

    async def is_running(self, alloc_id: str, task_name: str) -> bool:
        try:
            state = await self._task_state(alloc_id, task_name)
        except NomadError:
            logger.debug(
                f"Could not read task {task_name!r} in allocation {alloc_id[:8]}",
                exc_info=True,
            )
            return False
        return state.state == "running" and not state.failed

    async def get_status(self, alloc_id: str, task_name: str) -> TaskStatus:
        state = await self._task_state(alloc_id, task_name)
        return TaskStatus(
            state=state.state,
            failed=state.failed,
            restarts=state.restarts,
            events=state.events or [],
            started_at=state.started_at,
            finished_at=state.finished_at,
        )

    async def wait_for_state_result(
        self,
        alloc_id: str,
        task_name: str,
        desired_state: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
        handle: PollHandle | None = None,
    ) -> WaitResult:
        """Waits for a task to reach `desired_state`, stopping early once it is dead."""

        async def probe() -> str:
            return (await self._task_state(alloc_id, task_name)).state

        return await wait_for_status(
            probe,
            desired_state,
            TASK_TERMINAL_STATES,
            timeout=timeout,
            interval=interval,
            handle=handle,
            subject=f"Task {task_name!r} in allocation {alloc_id[:8]}",
        )

    async def wait_for_state(
        self,
        alloc_id: str,
        task_name: str,
        desired_state: str,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval: float = STATUS_POLL_INTERVAL_SECONDS,
    ) -> bool:
        result = await self.wait_for_state_result(
            alloc_id, task_name, desired_state, timeout, interval
        )
        return result.succeeded
