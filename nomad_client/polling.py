"""
Repeated-probe loop that turns Nomad's request/response API into waitable,
cancellable operations.

    ┌──────────────┐  value   ┌───────────┐  false  ┌──────────────────┐
    │ probe()      │─────────>│should_stop│────────>│ sleep(interval)  │──┐
    └──────────────┘          └───────────┘         │ (wakes on cancel)│  │
        ^    │ raises               │ true          └──────────────────┘  │
        │    v                      v                                     │
        │  FAILED                STOPPED                                  │
        │                                                                 │
        └──── cancelled? -> CANCELLED ── deadline passed? -> TIMED_OUT <──┘

Probes run strictly one after another on the calling event loop. Cancellation
is cooperative: the handle is checked before every probe and after every
sleep, and it never interrupts a probe that is already in flight. The
result of such a probe is discarded.
"""

from __future__ import annotations

import enum
import logging
from typing import Awaitable, Callable, Generic, TypeVar

import anyio
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollOutcome(str, enum.Enum):
    """Why a poll loop exited."""

    STOPPED = "stopped"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PollResult(BaseModel, Generic[T]):
    """The outcome of `poll_until`.

    Attributes:
        outcome: Why the loop exited.
        value: The last probe value that was not discarded, if any.
        error: The exception raised by the probe when `outcome` is `FAILED`.
        probes: The number of probes that were started.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: PollOutcome
    value: T | None = None
    error: BaseException | None = None
    probes: int = 0

    @property
    def stopped(self) -> bool:
        return self.outcome is PollOutcome.STOPPED


class PollHandle:
    """Cancellation token shared between a poll loop and its owner.

    Calling `cancel` (or the handle itself) stops the loop before its next
    probe and wakes it from any sleep in progress.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._wakeup: anyio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._wakeup is not None:
            self._wakeup.set()

    __call__ = cancel

    async def sleep(self, seconds: float) -> None:
        """Sleeps for `seconds`, returning early if the handle is cancelled."""
        if self._cancelled:
            return
        if self._wakeup is None:
            self._wakeup = anyio.Event()
        with anyio.move_on_after(seconds):
            await self._wakeup.wait()


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    should_stop: Callable[[T], bool],
    interval: float,
    timeout: float | None = None,
    handle: PollHandle | None = None,
    on_value: Callable[[T], None] | None = None,
) -> PollResult[T]:
    """Invokes `probe` every `interval` seconds until `should_stop` holds.

    A probe that raises ends the loop immediately; nothing is retried.

    Args:
        probe: Coroutine function fetching the current value.
        should_stop: Predicate deciding whether the latest value ends the loop.
        interval: Seconds to sleep between probes. Must be positive.
        timeout: Overall time limit in seconds. If None, polls until stopped,
            cancelled or failed.
        handle: Cancellation token. A private one is created if omitted.
        on_value: Called with every probe value that is not discarded,
            before `should_stop`.

    Returns:
        A `PollResult` whose `outcome` tells the four exit paths apart.
    """
    if interval <= 0:
        raise ValueError(f"Poll interval must be positive, got {interval!r}")

    handle = handle or PollHandle()
    deadline = anyio.current_time() + timeout if timeout is not None else None
    probes = 0
    last_value: T | None = None

    while True:
        if handle.cancelled:
            return PollResult(
                outcome=PollOutcome.CANCELLED, value=last_value, probes=probes
            )
        if deadline is not None and anyio.current_time() >= deadline:
            return PollResult(
                outcome=PollOutcome.TIMED_OUT, value=last_value, probes=probes
            )

        probes += 1
        try:
            value = await probe()
        except Exception as exc:
            if handle.cancelled:
                logger.debug(f"Discarding probe error after cancellation: {exc}")
                return PollResult(
                    outcome=PollOutcome.CANCELLED, value=last_value, probes=probes
                )
            return PollResult(
                outcome=PollOutcome.FAILED, value=last_value, error=exc, probes=probes
            )

        if handle.cancelled:
            return PollResult(
                outcome=PollOutcome.CANCELLED, value=last_value, probes=probes
            )

        last_value = value
        if on_value is not None:
            on_value(value)
        if should_stop(value):
            return PollResult(outcome=PollOutcome.STOPPED, value=value, probes=probes)

        delay = interval
        if deadline is not None:
            delay = min(delay, max(deadline - anyio.current_time(), 0))
        await handle.sleep(delay)
