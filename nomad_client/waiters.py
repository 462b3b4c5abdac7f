"""Wait until a Nomad object reaches a status, by polling it."""

from __future__ import annotations

import enum
import logging
from typing import Awaitable, Callable

from pydantic import BaseModel, ConfigDict

from .exceptions import NomadNotFoundError
from .polling import PollHandle, PollOutcome, poll_until

logger = logging.getLogger(__name__)

# Seconds between status checks while waiting
STATUS_POLL_INTERVAL_SECONDS = 2

# Default time to wait for a status before giving up (5 minutes)
DEFAULT_WAIT_TIMEOUT_SECONDS = 300

# Statuses after which no further transition is expected
ALLOCATION_TERMINAL_STATUSES = frozenset({"complete", "failed", "lost"})
TASK_TERMINAL_STATES = frozenset({"dead"})
JOB_TERMINAL_STATUSES = frozenset({"dead"})
NODE_TERMINAL_STATUSES = frozenset({"down"})


class WaitOutcome(str, enum.Enum):
    """How a status wait ended.

    `REACHED` and `GONE` count as success, everything else as failure.
    """

    REACHED = "reached"
    GONE = "gone"
    TERMINAL = "terminal"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WaitResult(BaseModel):
    """The outcome of `wait_for_status`.

    Truthy when the desired status was reached, so callers who only care
    about success can use it as a boolean.

    Attributes:
        outcome: How the wait ended.
        status: The last status observed, if any.
        error: The probe error when `outcome` is `FAILED` or `GONE`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: WaitOutcome
    status: str | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (WaitOutcome.REACHED, WaitOutcome.GONE)

    def __bool__(self) -> bool:
        return self.succeeded


async def wait_for_status(
    probe: Callable[[], Awaitable[str]],
    desired_status: str,
    terminal_statuses: frozenset[str] | set[str] = frozenset(),
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
    interval: float = STATUS_POLL_INTERVAL_SECONDS,
    handle: PollHandle | None = None,
    complete_when_gone: bool = False,
    subject: str = "object",
) -> WaitResult:
    """Polls `probe` until it returns `desired_status`.

    The wait ends early when a terminal status other than the desired one is
    observed, since no later transition can reach it. Statuses are compared
    exactly.

    Args:
        probe: Coroutine function returning the current status string.
        desired_status: The status to wait for.
        terminal_statuses: Statuses after which waiting cannot help.
        timeout: Seconds to wait before giving up.
        interval: Seconds between status checks.
        handle: Optional cancellation token.
        complete_when_gone: Treat a not-found probe error as success when
            waiting for `complete`. Nomad garbage-collects finished objects,
            so a vanished object and a completed one look the same.
        subject: Description of the polled object, used in log messages.

    Returns:
        A `WaitResult` describing how the wait ended.
    """

    def should_stop(status: str) -> bool:
        logger.debug(f"{subject} status: {status}")
        return status == desired_status or status in terminal_statuses

    logger.info(
        f"Waiting up to {timeout} seconds for {subject} to reach {desired_status!r}"
    )
    result = await poll_until(
        probe, should_stop, interval, timeout=timeout, handle=handle
    )

    if result.outcome is PollOutcome.STOPPED:
        if result.value == desired_status:
            logger.info(
                f"{subject} reached status {desired_status!r} "
                f"after {result.probes} checks"
            )
            return WaitResult(outcome=WaitOutcome.REACHED, status=result.value)
        logger.info(
            f"{subject} reached terminal status {result.value!r} "
            f"while waiting for {desired_status!r} after {result.probes} checks"
        )
        return WaitResult(outcome=WaitOutcome.TERMINAL, status=result.value)

    if result.outcome is PollOutcome.TIMED_OUT:
        logger.info(
            f"Timed out after {timeout} seconds and {result.probes} checks waiting "
            f"for {subject} to reach {desired_status!r} "
            f"(last status: {result.value!r})"
        )
        return WaitResult(outcome=WaitOutcome.TIMED_OUT, status=result.value)

    if result.outcome is PollOutcome.CANCELLED:
        logger.info(
            f"Wait for {subject} to reach {desired_status!r} was cancelled "
            f"after {result.probes} checks"
        )
        return WaitResult(outcome=WaitOutcome.CANCELLED, status=result.value)

    if (
        complete_when_gone
        and desired_status == "complete"
        and isinstance(result.error, NomadNotFoundError)
    ):
        logger.info(
            f"{subject} no longer exists after {result.probes} checks; "
            "treating it as complete"
        )
        return WaitResult(
            outcome=WaitOutcome.GONE, status=result.value, error=result.error
        )

    logger.warning(
        f"Stopped waiting for {subject} to reach {desired_status!r} after "
        f"{result.probes} checks: {result.error}"
    )
    return WaitResult(
        outcome=WaitOutcome.FAILED, status=result.value, error=result.error
    )
