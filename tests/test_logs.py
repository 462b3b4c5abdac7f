"""Tests for log chunk decoding and the polling log tail."""

import base64
import json

import anyio
import pytest

from nomad_client.exceptions import NomadConnectionError
from nomad_client.logs import (
    decode_log_frames,
    read_log_chunk,
    start_log_stream,
    stream_logs,
)
from nomad_client.polling import PollHandle, PollOutcome
from nomad_client.transport import NomadResponse

ALLOC_ID = "5f1e2d3c-aaaa-bbbb-cccc-1234567890ab"
LOG_PATH = f"/v1/client/fs/logs/{ALLOC_ID}"


def _frame(data: bytes | str, offset: int, file: str = "alloc/logs/server.stdout.0"):
    raw = data.encode() if isinstance(data, str) else data
    return {"Data": base64.b64encode(raw).decode(), "Offset": offset, "File": file}


def _requested_offsets(transport):
    return [call.kwargs["params"]["offset"] for call in transport.request.call_args_list]


class TestDecodeLogFrames:
    def test_single_frame(self):
        chunk = decode_log_frames(_frame("hello\n", 6))

        assert chunk.data == b"hello\n"
        assert chunk.text == "hello\n"
        assert chunk.next_offset == 6
        assert chunk.source_file == "alloc/logs/server.stdout.0"

    def test_concatenated_frames(self):
        body = json.dumps(_frame("one ", 4)) + "\n" + json.dumps(_frame("two", 7))

        chunk = decode_log_frames(body, offset=0)

        assert chunk.text == "one two"
        assert chunk.next_offset == 7

    def test_empty_body_keeps_offset(self):
        chunk = decode_log_frames(None, offset=42)

        assert chunk.data == b""
        assert chunk.next_offset == 42

    def test_frame_without_data(self):
        chunk = decode_log_frames({"Data": "", "Offset": 10}, offset=3)

        assert chunk.data == b""
        assert chunk.next_offset == 10


class TestReadLogChunk:
    async def test_requests_log_endpoint(self, make_transport):
        transport = make_transport({("GET", LOG_PATH): _frame("hi", 2)})

        chunk = await read_log_chunk(transport, ALLOC_ID, "server", "stderr", offset=5)

        assert chunk.text == "hi"
        transport.request.assert_awaited_once_with(
            "GET",
            LOG_PATH,
            params={
                "task": "server",
                "type": "stderr",
                "origin": "start",
                "offset": "5",
                "follow": "false",
                "plain": "false",
            },
        )


class TestStreamLogs:
    async def test_empty_chunk_suppresses_callback(self, make_transport):
        transport = make_transport(
            {("GET", LOG_PATH): ({"Data": "", "Offset": 10}, _frame("hello", 15))}
        )
        handle = PollHandle()
        received = []

        def on_data(text):
            received.append(text)
            handle.cancel()

        with anyio.fail_after(2):
            result = await stream_logs(
                transport, ALLOC_ID, "server", on_data=on_data, handle=handle,
                interval=0.001,
            )

        assert received == ["hello"]
        assert result.outcome is PollOutcome.CANCELLED

    async def test_reads_continue_from_returned_offset(self, make_transport):
        transport = make_transport(
            {
                ("GET", LOG_PATH): (
                    _frame("abc", 3),
                    _frame("de", 5),
                    {"Data": "", "Offset": 5},
                )
            }
        )
        handle = PollHandle()

        async def stop_later():
            while transport.request.await_count < 4:
                await anyio.sleep(0.001)
            handle.cancel()

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                tg.start_soon(stop_later)
                await stream_logs(
                    transport, ALLOC_ID, "server", handle=handle, interval=0.001
                )

        assert _requested_offsets(transport)[:4] == ["0", "3", "5", "5"]

    async def test_offset_never_moves_backwards(self, make_transport):
        transport = make_transport(
            {("GET", LOG_PATH): (_frame("abcdef", 6), {"Data": "", "Offset": 2})}
        )
        handle = PollHandle()

        async def stop_later():
            while transport.request.await_count < 4:
                await anyio.sleep(0.001)
            handle.cancel()

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                tg.start_soon(stop_later)
                await stream_logs(
                    transport, ALLOC_ID, "server", handle=handle, interval=0.001
                )

        offsets = [int(o) for o in _requested_offsets(transport)]
        assert offsets == sorted(offsets)
        assert offsets[1:4] == [6, 6, 6]

    async def test_multibyte_characters_split_across_reads(self, make_transport):
        encoded = "é".encode()
        transport = make_transport(
            {
                ("GET", LOG_PATH): (
                    _frame(encoded[:1], 1),
                    _frame(encoded[1:], 2),
                )
            }
        )
        handle = PollHandle()
        received = []

        def on_data(text):
            received.append(text)
            handle.cancel()

        with anyio.fail_after(2):
            await stream_logs(
                transport, ALLOC_ID, "server", on_data=on_data, handle=handle,
                interval=0.001,
            )

        assert received == ["é"]

    async def test_read_failure_reported_once_and_ends_stream(self, make_transport):
        error = NomadConnectionError("connection refused")
        transport = make_transport({("GET", LOG_PATH): (_frame("ok", 2), error)})
        errors = []

        with anyio.fail_after(2):
            result = await stream_logs(
                transport, ALLOC_ID, "server", on_error=errors.append, interval=0.001
            )

        assert errors == [error]
        assert result.outcome is PollOutcome.FAILED
        assert transport.request.await_count == 2

    async def test_failure_without_error_callback_is_returned(self, make_transport):
        transport = make_transport({("GET", LOG_PATH): NomadConnectionError("down")})

        result = await stream_logs(transport, ALLOC_ID, "server", interval=0.001)

        assert result.outcome is PollOutcome.FAILED
        assert isinstance(result.error, NomadConnectionError)

    async def test_consumer_error_reported_once_and_ends_stream(self, make_transport):
        transport = make_transport({("GET", LOG_PATH): _frame("boom", 4)})
        failure = RuntimeError("consumer failed")
        errors = []

        def on_data(text):
            raise failure

        with anyio.fail_after(2):
            result = await stream_logs(
                transport, ALLOC_ID, "server", on_data=on_data,
                on_error=errors.append, interval=0.001,
            )

        assert errors == [failure]
        assert result.outcome is PollOutcome.FAILED
        assert transport.request.await_count == 1


class TestStartLogStream:
    async def test_cancel_function_stops_background_stream(self, make_transport):
        transport = make_transport({("GET", LOG_PATH): _frame("", 0)})
        errors = []

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                stop = start_log_stream(
                    tg, transport, ALLOC_ID, "server", on_error=errors.append,
                    interval=3600,
                )
                while transport.request.await_count == 0:
                    await anyio.sleep(0.001)
                stop()

        assert transport.request.await_count == 1
        assert errors == []

    async def test_delivers_output_in_background(self, make_transport):
        transport = make_transport(
            {("GET", LOG_PATH): NomadResponse(status=200, data=_frame("line\n", 5))}
        )
        received = []

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                stop = start_log_stream(
                    tg, transport, ALLOC_ID, "server", on_data=received.append,
                    interval=0.001,
                )
                while not received:
                    await anyio.sleep(0.001)
                stop()

        assert received[0] == "line\n"

    async def test_consumer_error_stays_inside_stream(self, make_transport):
        transport = make_transport({("GET", LOG_PATH): _frame("line\n", 5)})
        errors = []
        sibling_finished = []

        def on_data(text):
            raise RuntimeError("consumer failed")

        async def sibling():
            await anyio.sleep(0.05)
            sibling_finished.append(True)

        with anyio.fail_after(2):
            async with anyio.create_task_group() as tg:
                tg.start_soon(sibling)
                start_log_stream(
                    tg, transport, ALLOC_ID, "server", on_data=on_data,
                    on_error=errors.append, interval=0.001,
                )

        assert [str(error) for error in errors] == ["consumer failed"]
        assert sibling_finished == [True]


@pytest.mark.parametrize("log_type", ["stdout", "stderr"])
async def test_stream_requests_selected_log_type(make_transport, log_type):
    transport = make_transport({("GET", LOG_PATH): NomadConnectionError("down")})

    await stream_logs(transport, ALLOC_ID, "server", log_type, interval=0.001)

    assert transport.request.call_args.kwargs["params"]["type"] == log_type
