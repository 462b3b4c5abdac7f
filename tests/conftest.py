from unittest.mock import AsyncMock, MagicMock

import pytest

from nomad_client.exceptions import NomadNotFoundError
from nomad_client.transport import NomadResponse


@pytest.fixture(autouse=True)
def clean_nomad_env(monkeypatch):
    """Keeps NOMAD_* variables from the developer's shell out of the tests."""
    for name in (
        "NOMAD_ADDR",
        "NOMAD_TOKEN",
        "NOMAD_NAMESPACE",
        "NOMAD_REGION",
        "NOMAD_CACERT",
        "NOMAD_CLIENT_CERT",
        "NOMAD_CLIENT_KEY",
        "NOMAD_SKIP_VERIFY",
        "NOMAD_AUTH_METHOD",
        "NOMAD_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


def not_found(path: str = "") -> NomadNotFoundError:
    return NomadNotFoundError(
        f"Nomad returned HTTP 404 for GET {path}", path=path, status_code=404
    )


def _make_mock_transport(routes: dict | None = None) -> MagicMock:
    """Helper to construct a fake transport answering from a route table.

    Args:
        routes: Maps ``(method, path)`` to a response. A response is an
            exception instance (raised), a `NomadResponse` (returned as is),
            or any other value (returned as the body of a 200 response). A
            tuple is a sequence of successive responses for repeated calls;
            its last item repeats once the others are used up. Unknown routes
            raise `NomadNotFoundError`.
    """
    routes = dict(routes or {})
    calls: dict[tuple[str, str], int] = {}

    async def request(method, path, *, params=None, headers=None, json=None):
        key = (method, path)
        if key not in routes:
            raise not_found(path)

        response = routes[key]
        if isinstance(response, tuple):
            index = calls.get(key, 0)
            calls[key] = index + 1
            response = response[min(index, len(response) - 1)]

        if isinstance(response, BaseException):
            raise response
        if isinstance(response, NomadResponse):
            return response
        return NomadResponse(status=200, data=response)

    mock = MagicMock()
    mock.routes = routes
    mock.request = AsyncMock(side_effect=request)
    return mock


def _allocation(
    alloc_id: str = "alloc-abc12345",
    client_status: str = "running",
    task_states: dict | None = None,
    **fields,
) -> dict:
    if task_states is None:
        task_states = {
            "server": {
                "State": "running" if client_status == "running" else "dead",
                "Failed": client_status == "failed",
                "Restarts": 0,
                "Events": [{"Type": "Started"}],
            }
        }
    return {
        "ID": alloc_id,
        "Name": "web.server[0]",
        "JobID": "web",
        "NodeID": "node-1234567890",
        "TaskGroup": "server",
        "ClientStatus": client_status,
        "TaskStates": task_states,
        "CreateTime": 1_700_000_000_000_000_000,
        "ModifyTime": 1_700_000_060_000_000_000,
        **fields,
    }


@pytest.fixture
def make_transport():
    """Factory fixture around `_make_mock_transport`.

    Usage::

        def test_something(make_transport):
            transport = make_transport({("GET", "/v1/jobs"): []})
    """
    return _make_mock_transport


@pytest.fixture
def make_allocation():
    """Factory fixture building allocation API payloads."""
    return _allocation


@pytest.fixture
def running_allocation():
    return _allocation()


@pytest.fixture
def completed_allocation():
    return _allocation(
        client_status="complete",
        task_states={
            "server": {
                "State": "dead",
                "Failed": False,
                "Events": [{"Type": "Terminated", "ExitCode": 0}],
            }
        },
    )
