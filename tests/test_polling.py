"""Tests for the poll loop engine and its cancellation handle."""

import anyio
import pytest

from nomad_client.polling import PollHandle, PollOutcome, poll_until


def _sequence_probe(values):
    """Returns a probe yielding `values` in order, repeating the last one."""
    state = {"calls": 0}

    async def probe():
        index = min(state["calls"], len(values) - 1)
        state["calls"] += 1
        return values[index]

    probe.state = state
    return probe


class TestPollUntilStops:
    async def test_stops_when_predicate_holds(self):
        probe = _sequence_probe(["pending", "pending", "running"])

        result = await poll_until(probe, lambda v: v == "running", 0.01)

        assert result.outcome is PollOutcome.STOPPED
        assert result.stopped
        assert result.value == "running"
        assert result.probes == 3

    async def test_immediate_success_does_not_sleep(self):
        probe = _sequence_probe(["running"])

        with anyio.fail_after(1):
            result = await poll_until(probe, lambda v: v == "running", 3600)

        assert result.outcome is PollOutcome.STOPPED
        assert result.probes == 1

    async def test_on_value_sees_every_value_in_order(self):
        seen = []
        probe = _sequence_probe([1, 2, 3])

        await poll_until(probe, lambda v: v == 3, 0.01, on_value=seen.append)

        assert seen == [1, 2, 3]

    async def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            await poll_until(_sequence_probe([1]), lambda v: True, 0)


class TestPollUntilTimeout:
    async def test_times_out_within_one_interval(self):
        probe = _sequence_probe(["pending"])
        start = anyio.current_time()

        result = await poll_until(probe, lambda v: False, 0.02, timeout=0.1)

        elapsed = anyio.current_time() - start
        assert result.outcome is PollOutcome.TIMED_OUT
        assert result.value == "pending"
        assert 0.1 <= elapsed < 0.1 + 0.02 + 0.1

    async def test_zero_timeout_probes_nothing(self):
        probe = _sequence_probe(["pending"])

        result = await poll_until(probe, lambda v: False, 1, timeout=0)

        assert result.outcome is PollOutcome.TIMED_OUT
        assert result.probes == 0


class TestPollUntilFailure:
    async def test_probe_error_ends_loop_without_retry(self):
        calls = 0

        async def probe():
            nonlocal calls
            calls += 1
            raise RuntimeError("connection refused")

        result = await poll_until(probe, lambda v: True, 0.01, timeout=1)

        assert result.outcome is PollOutcome.FAILED
        assert isinstance(result.error, RuntimeError)
        assert calls == 1

    async def test_error_after_values_keeps_last_value(self):
        values = iter(["pending"])

        async def probe():
            try:
                return next(values)
            except StopIteration:
                raise RuntimeError("gone") from None

        result = await poll_until(probe, lambda v: False, 0.01)

        assert result.outcome is PollOutcome.FAILED
        assert result.value == "pending"
        assert result.probes == 2


class TestPollUntilCancellation:
    async def test_cancelled_before_start_never_probes(self):
        probe = _sequence_probe(["pending"])
        handle = PollHandle()
        handle.cancel()

        result = await poll_until(probe, lambda v: False, 0.01, handle=handle)

        assert result.outcome is PollOutcome.CANCELLED
        assert probe.state["calls"] == 0

    async def test_cancel_wakes_loop_from_sleep(self):
        probe = _sequence_probe(["pending"])
        handle = PollHandle()
        results = []

        async def run():
            results.append(
                await poll_until(probe, lambda v: False, 3600, handle=handle)
            )

        with anyio.fail_after(1):
            async with anyio.create_task_group() as tg:
                tg.start_soon(run)
                while probe.state["calls"] == 0:
                    await anyio.sleep(0.001)
                handle()

        assert results[0].outcome is PollOutcome.CANCELLED
        assert probe.state["calls"] == 1

    async def test_no_probe_after_cancel_returns(self):
        handle = PollHandle()
        calls_at_cancel = None
        calls = 0

        async def probe():
            nonlocal calls
            calls += 1
            return calls

        def on_value(value):
            nonlocal calls_at_cancel
            if value == 3:
                handle.cancel()
                calls_at_cancel = calls

        await poll_until(probe, lambda v: False, 0.001, handle=handle, on_value=on_value)
        await anyio.sleep(0.02)

        assert calls == calls_at_cancel == 3

    async def test_value_of_in_flight_probe_is_discarded(self):
        handle = PollHandle()
        seen = []

        async def probe():
            handle.cancel()
            return "running"

        result = await poll_until(
            probe, lambda v: v == "running", 0.01, handle=handle, on_value=seen.append
        )

        assert result.outcome is PollOutcome.CANCELLED
        assert result.value is None
        assert seen == []

    async def test_error_of_in_flight_probe_is_discarded(self):
        handle = PollHandle()

        async def probe():
            handle.cancel()
            raise RuntimeError("late failure")

        result = await poll_until(probe, lambda v: False, 0.01, handle=handle)

        assert result.outcome is PollOutcome.CANCELLED
        assert result.error is None


class TestPollUntilConcurrency:
    async def test_probes_never_overlap(self):
        in_flight = 0
        max_in_flight = 0
        calls = 0

        async def probe():
            nonlocal in_flight, max_in_flight, calls
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await anyio.sleep(0.005)
            in_flight -= 1
            calls += 1
            return calls

        await poll_until(probe, lambda v: v >= 5, 0.001)

        assert max_in_flight == 1

    async def test_independent_loops_do_not_share_state(self):
        first = _sequence_probe(["a", "done"])
        second = _sequence_probe(["x", "y", "done"])
        results = {}

        async def run(name, probe):
            results[name] = await poll_until(probe, lambda v: v == "done", 0.005)

        async with anyio.create_task_group() as tg:
            tg.start_soon(run, "first", first)
            tg.start_soon(run, "second", second)

        assert results["first"].probes == 2
        assert results["second"].probes == 3
