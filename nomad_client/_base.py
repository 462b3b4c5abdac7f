from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

import anyio
from pydantic import BaseModel

from .models import ListResponse, QueryOptions, WriteResponse
from .transport import NEXT_TOKEN_HEADER, NomadResponse, Transport

M = TypeVar("M", bound=BaseModel)


async def gather(*calls: Callable[[], Awaitable[Any]]) -> list[Any]:
    """Runs coroutine functions concurrently and returns their results in order.

    All calls run to completion; the first exception (in call order) is
    re-raised afterwards.
    """
    results: list[Any] = [None] * len(calls)
    errors: list[Exception | None] = [None] * len(calls)

    async def run(index: int, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            results[index] = await call()
        except Exception as exc:
            errors[index] = exc

    async with anyio.create_task_group() as tg:
        for index, call in enumerate(calls):
            tg.start_soon(run, index, call)

    for error in errors:
        if error is not None:
            raise error
    return results


class APIModule:
    """Base class for the REST modules; holds the shared transport."""

    def __init__(self, transport: Transport):
        self._transport = transport

    @staticmethod
    def _params(
        options: QueryOptions | None = None, **extra: Any
    ) -> dict[str, str] | None:
        params = options.to_params() if options else {}
        for key, value in extra.items():
            if value is None:
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params or None

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._transport.request("GET", path, params=params)
        return response.data

    async def _post(
        self, path: str, json: Any = None, params: dict[str, Any] | None = None
    ) -> Any:
        response = await self._transport.request(
            "POST", path, params=params, json=json
        )
        return response.data

    async def _write(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> WriteResponse:
        response = await self._transport.request(method, path, params=params, json=json)
        return WriteResponse.model_validate(response.data or {})

    async def _list(
        self, path: str, model: type[M], params: dict[str, Any] | None = None
    ) -> ListResponse[M]:
        response: NomadResponse = await self._transport.request(
            "GET", path, params=params
        )
        return ListResponse[model](
            items=[model.model_validate(item) for item in response.data or []],
            next_token=response.header(NEXT_TOKEN_HEADER),
        )
