"""Tests for the httpx-backed REST collaborator."""

import json

import httpx
import pytest

from chatflow.runtime.collaborators import RestRequest
from chatflow.runtime.rest_client import HttpRestCaller, extract_response_value
from chatflow.schemas.events import RestCompleted


def _request(**overrides) -> RestRequest:
    fields = {
        "request_id": "s1:api:1",
        "session_id": "s1",
        "node_id": "api",
        "method": "GET",
        "url": "https://shop.example.com/orders",
        "timeout_seconds": 2.0,
    }
    fields.update(overrides)
    return RestRequest(**fields)


def _caller(handler) -> HttpRestCaller:
    return HttpRestCaller(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_success_with_response_path():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"items": [{"name": "Boots"}]}})

    result = await _caller(handler).perform(_request(response_path="data.items[0].name"))

    assert result == RestCompleted(payload="Boots", ok=True, status_code=200, request_id="s1:api:1")


@pytest.mark.asyncio
async def test_json_body_and_headers_are_sent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(201, json={"id": 9})

    result = await _caller(handler).perform(
        _request(method="post", body={"sku": "A1"}, headers={"Authorization": "Bearer t"})
    )

    assert seen == {"method": "POST", "body": {"sku": "A1"}, "auth": "Bearer t"}
    assert result.payload == {"id": 9}


@pytest.mark.asyncio
async def test_get_never_sends_a_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["content"] = request.content
        return httpx.Response(200, text="pong")

    result = await _caller(handler).perform(_request(body={"ignored": True}))

    assert seen["content"] == b""
    assert result.payload == "pong"


@pytest.mark.asyncio
async def test_http_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no such order")

    result = await _caller(handler).perform(_request())

    assert not result.ok
    assert result.status_code == 404
    assert result.error == "HTTP 404: no such order"


@pytest.mark.asyncio
async def test_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    result = await _caller(handler).perform(_request())

    assert not result.ok
    assert result.error == "Request timed out after 2s"


@pytest.mark.asyncio
async def test_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _caller(handler).perform(_request())

    assert not result.ok
    assert result.error == "Network error: connection refused"
    assert result.request_id == "s1:api:1"


@pytest.mark.asyncio
async def test_dispatch_reports_through_callback():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[1, 2, 3])

    received: list[RestCompleted] = []

    async def on_complete(event: RestCompleted) -> None:
        received.append(event)

    caller = _caller(handler)
    await caller.dispatch(_request(), on_complete)
    await caller.drain()

    assert [e.payload for e in received] == [[1, 2, 3]]


@pytest.mark.asyncio
async def test_unsendable_request_still_completes():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    received: list[RestCompleted] = []

    async def on_complete(event: RestCompleted) -> None:
        received.append(event)

    caller = _caller(handler)
    await caller.dispatch(_request(headers={"X-Customer": "José"}), on_complete)
    await caller.drain()

    assert len(received) == 1
    assert not received[0].ok
    assert received[0].error.startswith("Request failed: ")
    assert received[0].request_id == "s1:api:1"


@pytest.mark.asyncio
async def test_unexpected_transport_error_still_completes(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        raise ValueError("broken transport")

    received: list[RestCompleted] = []

    async def on_complete(event: RestCompleted) -> None:
        received.append(event)

    caller = _caller(handler)
    await caller.dispatch(_request(), on_complete)
    await caller.drain()

    assert [e.error for e in received] == ["Request failed: broken transport"]
    assert "REST call could not be made: GET https://shop.example.com/orders" in caplog.text


@pytest.mark.asyncio
async def test_failing_callback_is_logged(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    async def on_complete(event: RestCompleted) -> None:
        raise RuntimeError("runtime gone")

    caller = _caller(handler)
    await caller.dispatch(_request(), on_complete)
    await caller.drain()

    assert "REST completion handler failed for s1:api:1" in caplog.text


@pytest.mark.asyncio
async def test_aclose_keeps_injected_client():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    caller = HttpRestCaller(client=client)
    await caller.aclose()
    assert not client.is_closed
    await client.aclose()


@pytest.mark.parametrize(
    "data, path, expected",
    [
        ({"a": {"b": 1}}, "a.b", 1),
        ({"a": [10, 20]}, "a[1]", 20),
        ({"a": 1}, None, {"a": 1}),
        ({"a": 1}, "missing", None),
        ("plain text", "a", None),
    ],
)
def test_extract_response_value(data, path, expected):
    assert extract_response_value(data, path) == expected
