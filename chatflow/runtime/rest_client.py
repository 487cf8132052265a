"""
HTTP REST collaborator built on httpx.

``HttpRestCaller.dispatch`` schedules the request on the running event loop
and returns immediately; the outcome is reported through the completion
callback as a ``RestCompleted`` event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from chatflow.graph.variables import get_path
from chatflow.runtime.collaborators import RestCallback, RestCaller, RestRequest
from chatflow.schemas.events import RestCompleted

logger = logging.getLogger(__name__)


def extract_response_value(data: Any, path: str | None) -> Any:
    """Pick ``data.items[0].name``-style paths out of a decoded response."""
    if not path:
        return data
    return get_path(data, path)


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpRestCaller(RestCaller):
    """
    Performs rest_api node calls with an ``httpx.AsyncClient``.

    Example:
        caller = HttpRestCaller()
        await caller.dispatch(request, on_complete=runtime_callback)
        ...
        await caller.aclose()
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._owns_client = client is None
        self._tasks: set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def dispatch(self, request: RestRequest, on_complete: RestCallback) -> None:
        task = asyncio.create_task(self._run(request, on_complete))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Dispatched {request.method} {request.url} ({request.request_id})")

    async def _run(self, request: RestRequest, on_complete: RestCallback) -> None:
        try:
            result = await self.perform(request)
        except Exception as e:
            # Bad URLs, unencodable headers or bodies fail before anything is sent
            logger.exception(f"REST call could not be made: {request.method} {request.url}")
            result = RestCompleted(
                ok=False, error=f"Request failed: {e}", request_id=request.request_id
            )
        try:
            await on_complete(result)
        except Exception:
            logger.exception(f"REST completion handler failed for {request.request_id}")

    async def perform(self, request: RestRequest) -> RestCompleted:
        """Execute the request and convert the outcome into a RestCompleted event."""
        kwargs: dict[str, Any] = {"headers": request.headers, "timeout": request.timeout_seconds}
        if request.body is not None and request.method.upper() != "GET":
            if isinstance(request.body, dict | list):
                kwargs["json"] = request.body
            else:
                kwargs["content"] = str(request.body)

        try:
            response = await self._get_client().request(request.method.upper(), request.url, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"REST call timed out: {request.method} {request.url}")
            return RestCompleted(
                ok=False,
                error=f"Request timed out after {request.timeout_seconds:g}s",
                request_id=request.request_id,
            )
        except httpx.RequestError as e:
            logger.warning(f"REST call failed: {request.method} {request.url}: {e}")
            return RestCompleted(ok=False, error=f"Network error: {e}", request_id=request.request_id)

        data = _decode(response)
        if response.status_code >= 400:
            detail = data if isinstance(data, str) else response.text
            return RestCompleted(
                payload=data,
                ok=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: {detail[:200]}",
                request_id=request.request_id,
            )

        return RestCompleted(
            payload=extract_response_value(data, request.response_path),
            ok=True,
            status_code=response.status_code,
            request_id=request.request_id,
        )

    async def drain(self) -> None:
        """Wait for every in-flight request to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
