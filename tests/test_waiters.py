"""Tests for the wait-for-status helper and its tagged result."""

import logging

import anyio
import pytest

from nomad_client.exceptions import NomadConnectionError, NomadNotFoundError
from nomad_client.polling import PollHandle
from nomad_client.waiters import (
    ALLOCATION_TERMINAL_STATUSES,
    WaitOutcome,
    WaitResult,
    wait_for_status,
)


def _status_probe(*statuses):
    """Returns a probe yielding `statuses` in order; exceptions are raised."""
    state = {"calls": 0}

    async def probe():
        index = min(state["calls"], len(statuses) - 1)
        state["calls"] += 1
        status = statuses[index]
        if isinstance(status, BaseException):
            raise status
        return status

    probe.state = state
    return probe


class TestWaitResult:
    @pytest.mark.parametrize(
        "outcome, truthy",
        [
            (WaitOutcome.REACHED, True),
            (WaitOutcome.GONE, True),
            (WaitOutcome.TERMINAL, False),
            (WaitOutcome.TIMED_OUT, False),
            (WaitOutcome.FAILED, False),
            (WaitOutcome.CANCELLED, False),
        ],
    )
    def test_truthiness_follows_outcome(self, outcome, truthy):
        result = WaitResult(outcome=outcome)
        assert bool(result) is truthy
        assert result.succeeded is truthy


class TestWaitForStatus:
    async def test_reaches_status_after_pending(self):
        probe = _status_probe("pending", "pending", "running")
        start = anyio.current_time()

        result = await wait_for_status(probe, "running", timeout=3, interval=0.05)

        elapsed = anyio.current_time() - start
        assert result.outcome is WaitOutcome.REACHED
        assert result.status == "running"
        assert probe.state["calls"] == 3
        assert 0.09 <= elapsed < 1

    async def test_immediate_success_returns_without_sleeping(self):
        probe = _status_probe("running")

        with anyio.fail_after(1):
            result = await wait_for_status(probe, "running", interval=3600)

        assert result
        assert probe.state["calls"] == 1

    async def test_terminal_mismatch_short_circuits(self):
        probe = _status_probe("pending", "failed")

        with anyio.fail_after(1):
            result = await wait_for_status(
                probe,
                "running",
                ALLOCATION_TERMINAL_STATUSES,
                timeout=300,
                interval=0.01,
            )

        assert result.outcome is WaitOutcome.TERMINAL
        assert result.status == "failed"
        assert not result

    async def test_times_out_within_one_interval(self):
        probe = _status_probe("pending")
        start = anyio.current_time()

        result = await wait_for_status(probe, "running", timeout=0.1, interval=0.03)

        elapsed = anyio.current_time() - start
        assert result.outcome is WaitOutcome.TIMED_OUT
        assert result.status == "pending"
        assert elapsed < 0.1 + 0.03 + 0.1

    async def test_not_found_counts_as_complete_when_enabled(self):
        probe = _status_probe(NomadNotFoundError("gone", status_code=404))

        result = await wait_for_status(
            probe, "complete", complete_when_gone=True, interval=0.01
        )

        assert result.outcome is WaitOutcome.GONE
        assert result

    async def test_not_found_fails_for_other_statuses(self):
        error = NomadNotFoundError("gone", status_code=404)
        probe = _status_probe(error)

        result = await wait_for_status(
            probe, "running", complete_when_gone=True, interval=0.01
        )

        assert result.outcome is WaitOutcome.FAILED
        assert result.error is error

    async def test_not_found_fails_when_disabled(self):
        probe = _status_probe(NomadNotFoundError("gone", status_code=404))

        result = await wait_for_status(probe, "complete", interval=0.01)

        assert result.outcome is WaitOutcome.FAILED

    async def test_probe_error_fails_without_retry(self):
        probe = _status_probe("pending", NomadConnectionError("refused"), "running")

        result = await wait_for_status(probe, "running", interval=0.01)

        assert result.outcome is WaitOutcome.FAILED
        assert isinstance(result.error, NomadConnectionError)
        assert result.status == "pending"
        assert probe.state["calls"] == 2

    async def test_status_comparison_is_case_sensitive(self):
        probe = _status_probe("Running")

        result = await wait_for_status(probe, "running", timeout=0.05, interval=0.01)

        assert result.outcome is WaitOutcome.TIMED_OUT

    async def test_cancelled_wait(self):
        probe = _status_probe("pending")
        handle = PollHandle()
        handle.cancel()

        result = await wait_for_status(probe, "running", handle=handle)

        assert result.outcome is WaitOutcome.CANCELLED
        assert probe.state["calls"] == 0


class TestWaitForStatusLogging:
    async def test_outcomes_are_logged_distinctly(self, caplog):
        caplog.set_level(logging.INFO, logger="nomad_client.waiters")

        await wait_for_status(_status_probe("running"), "running", subject="Alloc")
        await wait_for_status(
            _status_probe("lost"), "running", {"lost"}, subject="Alloc"
        )
        await wait_for_status(
            _status_probe("pending"), "running", timeout=0.02, interval=0.01,
            subject="Alloc",
        )

        messages = [record.getMessage() for record in caplog.records]
        assert "Alloc reached status 'running' after 1 checks" in messages
        assert any("terminal status 'lost'" in m for m in messages)
        assert any(m.startswith("Timed out") and "checks" in m for m in messages)
        assert sum(m.startswith("Waiting up to") for m in messages) == 3

    async def test_failure_logged_as_warning(self, caplog):
        caplog.set_level(logging.INFO, logger="nomad_client.waiters")

        await wait_for_status(
            _status_probe(NomadConnectionError("refused")), "running", subject="Alloc"
        )

        assert [r.levelno for r in caplog.records] == [logging.INFO, logging.WARNING]
        assert "after 1 checks" in caplog.records[-1].getMessage()
