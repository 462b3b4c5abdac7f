"""Offset-based log reads and the polling log tail built on top of them."""

from __future__ import annotations

import base64
import codecs
import functools
import json
import logging
from typing import Any, Callable, Literal

import anyio.abc
from pydantic import BaseModel

from .polling import PollHandle, PollOutcome, PollResult, poll_until
from .transport import Transport

logger = logging.getLogger(__name__)

# Seconds between log reads while tailing a task
LOG_POLL_INTERVAL_SECONDS = 1

LogType = Literal["stdout", "stderr"]

_frame_decoder = json.JSONDecoder()


class LogChunk(BaseModel):
    """A bounded slice of task output.

    Attributes:
        data: The raw bytes read from the log.
        next_offset: The byte offset to continue reading from.
        source_file: The log file the bytes came from.
    """

    data: bytes = b""
    next_offset: int = 0
    source_file: str = ""

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def _iter_frames(body: Any):
    if isinstance(body, dict):
        yield body
        return
    if not isinstance(body, str):
        return
    position = 0
    while True:
        while position < len(body) and body[position].isspace():
            position += 1
        if position >= len(body):
            return
        frame, position = _frame_decoder.raw_decode(body, position)
        if isinstance(frame, dict):
            yield frame


def decode_log_frames(body: Any, offset: int = 0) -> LogChunk:
    """Decodes a log endpoint response into a single `LogChunk`.

    Nomad answers with one `{"Data", "Offset", "File"}` frame, several frames
    back to back, or an empty body when there is nothing new. Data from all
    frames is concatenated and the last reported offset wins.

    Args:
        body: The decoded response body.
        offset: The offset the read started from, kept when no frame
            reports one.
    """
    data = bytearray()
    next_offset = offset
    source_file = ""

    for frame in _iter_frames(body):
        if frame.get("Data"):
            data.extend(base64.b64decode(frame["Data"]))
        if frame.get("Offset") is not None:
            next_offset = int(frame["Offset"])
        if frame.get("File"):
            source_file = frame["File"]

    return LogChunk(data=bytes(data), next_offset=next_offset, source_file=source_file)


async def read_log_chunk(
    transport: Transport,
    alloc_id: str,
    task_name: str,
    log_type: LogType = "stdout",
    offset: int = 0,
    origin: Literal["start", "end"] = "start",
) -> LogChunk:
    """Reads the log output available for a task at `offset`, without following."""
    response = await transport.request(
        "GET",
        f"/v1/client/fs/logs/{alloc_id}",
        params={
            "task": task_name,
            "type": log_type,
            "origin": origin,
            "offset": str(offset),
            "follow": "false",
            "plain": "false",
        },
    )
    return decode_log_frames(response.data, offset)


class _LogCursor:
    def __init__(self) -> None:
        self.offset = 0
        # Multi-byte characters may be split across reads
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")


async def stream_logs(
    transport: Transport,
    alloc_id: str,
    task_name: str,
    log_type: LogType = "stdout",
    on_data: Callable[[str], None] | None = None,
    on_error: Callable[[Exception], None] | None = None,
    *,
    handle: PollHandle | None = None,
    interval: float = LOG_POLL_INTERVAL_SECONDS,
) -> PollResult[LogChunk]:
    """Tails a task's log by polling it from offset 0.

    New output is passed to `on_data` as text; empty reads are skipped. The
    first failed read, or the first exception raised by `on_data`, is passed
    to `on_error` and ends the tail. The loop otherwise runs until `handle`
    is cancelled.

    Returns:
        The `PollResult` of the underlying poll loop.
    """
    cursor = _LogCursor()
    short_id = alloc_id[:8]
    handle = handle or PollHandle()

    async def probe() -> LogChunk:
        chunk = await read_log_chunk(
            transport, alloc_id, task_name, log_type, offset=cursor.offset
        )
        if handle.cancelled:
            return chunk
        # Consumer errors end the tail the same way a failed read does
        text = cursor.decoder.decode(chunk.data)
        if text and on_data is not None:
            on_data(text)
        cursor.offset = max(cursor.offset, chunk.next_offset)
        return chunk

    logger.info(f"Tailing {log_type} of task {task_name!r} in allocation {short_id}")
    result = await poll_until(probe, lambda _chunk: False, interval, handle=handle)

    if result.outcome is PollOutcome.FAILED:
        logger.info(
            f"Stopped tailing {log_type} of task {task_name!r} in allocation "
            f"{short_id} after {result.probes} reads: {result.error}"
        )
        if on_error is not None:
            on_error(result.error)
    else:
        logger.info(
            f"Log tail for task {task_name!r} in allocation {short_id} "
            f"ended: {result.outcome.value} after {result.probes} reads"
        )
    return result


def start_log_stream(
    task_group: anyio.abc.TaskGroup,
    transport: Transport,
    alloc_id: str,
    task_name: str,
    log_type: LogType = "stdout",
    on_data: Callable[[str], None] | None = None,
    on_error: Callable[[Exception], None] | None = None,
    *,
    interval: float = LOG_POLL_INTERVAL_SECONDS,
) -> Callable[[], None]:
    """Starts `stream_logs` in `task_group` and returns its cancel function."""
    handle = PollHandle()
    task_group.start_soon(
        functools.partial(
            stream_logs,
            transport,
            alloc_id,
            task_name,
            log_type,
            on_data,
            on_error,
            handle=handle,
            interval=interval,
        )
    )
    return handle.cancel
