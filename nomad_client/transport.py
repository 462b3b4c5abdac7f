"""
The request capability every API module is built on.

API modules never talk to sockets directly. They call
``await transport.request(method, path, ...)`` and receive a `NomadResponse`,
or a `NomadRequestError` subclass describing why the request failed.
`HttpxTransport` is the production implementation; tests substitute any
object with a compatible ``request`` coroutine.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from .exceptions import (
    NomadBadRequestError,
    NomadConnectionError,
    NomadNotFoundError,
    NomadPermissionError,
    NomadResponseError,
    NomadTimeoutError,
)

logger = logging.getLogger(__name__)

NEXT_TOKEN_HEADER = "X-Nomad-NextToken"
INDEX_HEADER = "X-Nomad-Index"


class NomadResponse(BaseModel):
    """A decoded response from the Nomad API.

    Attributes:
        status: The HTTP status code.
        headers: Response headers with lower-cased names.
        data: The parsed JSON body, the raw text when the body is not JSON,
            or ``None`` for an empty body.
    """

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class Transport(Protocol):
    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> NomadResponse: ...


_STATUS_ERRORS: dict[int, type[NomadResponseError]] = {
    400: NomadBadRequestError,
    401: NomadPermissionError,
    403: NomadPermissionError,
    404: NomadNotFoundError,
}


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        # Log frames and some error bodies are not a single JSON document
        return response.text


class HttpxTransport:
    """Transport backed by an `httpx.AsyncClient`.

    Args:
        base_url: The address of the Nomad API (e.g. `http://127.0.0.1:4646`).
        headers: Headers sent with every request (auth, content type).
        params: Query parameters sent with every request unless the caller
            overrides them (namespace, region).
        timeout: Request timeout in seconds.
        verify: TLS verification setting passed to httpx.
        client: An existing client to use instead of creating one. The
            transport does not close clients it did not create.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
        verify: Any = True,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._default_params = dict(params or {})
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, verify=verify
        )
        self._owns_client = client is None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> NomadResponse:
        method = method.upper()
        merged_params = dict(self._default_params)
        if params:
            merged_params.update({k: v for k, v in params.items() if v is not None})

        try:
            response = await self._client.request(
                method,
                path,
                params=merged_params,
                headers={**self._headers, **(headers or {})},
                json=json,
            )
        except httpx.TimeoutException as exc:
            raise NomadTimeoutError(
                f"Request {method} {path} timed out: {exc}", method=method, path=path
            ) from exc
        except httpx.TransportError as exc:
            raise NomadConnectionError(
                f"Could not reach Nomad at {self.base_url} for {method} {path}: {exc}",
                method=method,
                path=path,
            ) from exc

        data = _decode_body(response)
        logger.debug(f"{method} {path} -> {response.status_code}")

        if response.is_success:
            return NomadResponse(
                status=response.status_code,
                headers={k.lower(): v for k, v in response.headers.items()},
                data=data,
            )

        error_cls = _STATUS_ERRORS.get(response.status_code, NomadResponseError)
        detail = data if isinstance(data, str) else response.reason_phrase
        raise error_cls(
            f"Nomad returned HTTP {response.status_code} for {method} {path}"
            + (f": {detail.strip()}" if detail else ""),
            method=method,
            path=path,
            status_code=response.status_code,
            body=data,
        )

    async def aclose(self) -> None:
        """Closes the underlying client when this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
