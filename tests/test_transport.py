from __future__ import annotations

import json

import httpx
import pytest

from hc_httpx.exceptions import HTTPStatusError, TransportError, TransportTimeoutError
from hc_httpx.transport import HttpxTransport
from hc_httpx.types import RequestConfig


def _transport(handler) -> HttpxTransport:
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_sends_params_headers_and_json_body() -> None:
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(201, json={"id": 7})

    transport = _transport(handler)
    config = RequestConfig(
        method="POST",
        url="/users",
        base_url="https://api.test/v1",
        params={"notify": "yes"},
        headers={"Authorization": "Bearer abc"},
        data={"name": "ada"},
    )

    response = await transport.send(config)

    request = captured["request"]
    assert str(request.url) == "https://api.test/v1/users?notify=yes"
    assert request.headers["Authorization"] == "Bearer abc"
    assert json.loads(request.content) == {"name": "ada"}
    assert response.status == 201
    assert response.data == {"id": 7}
    assert response.config is config


@pytest.mark.asyncio
async def test_text_body_is_sent_verbatim_and_text_response_decoded() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.content == b"raw payload"
        return httpx.Response(200, text="plain")

    response = await _transport(handler).send(RequestConfig(method="PUT", url="https://api.test/blob", data="raw payload"))

    assert response.data == "plain"


@pytest.mark.asyncio
async def test_error_status_raises_http_status_error_with_response() -> None:
    transport = _transport(lambda request: httpx.Response(404, json={"detail": "missing"}))
    config = RequestConfig(url="https://api.test/users/9")

    with pytest.raises(HTTPStatusError) as excinfo:
        await transport.send(config)

    assert excinfo.value.status == 404
    assert excinfo.value.response.data == {"detail": "missing"}
    assert excinfo.value.config is config


@pytest.mark.asyncio
async def test_custom_status_validator_accepts_error_status() -> None:
    transport = HttpxTransport(
        httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404))),
        validate_status=lambda status: status < 500,
    )

    response = await transport.send(RequestConfig(url="https://api.test/x"))

    assert response.status == 404
    assert response.data is None


@pytest.mark.asyncio
async def test_network_failure_maps_to_transport_error_without_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    config = RequestConfig(url="https://api.test/x")
    with pytest.raises(TransportError) as excinfo:
        await _transport(handler).send(config)

    assert type(excinfo.value) is TransportError
    assert excinfo.value.response is None
    assert excinfo.value.config is config
    assert isinstance(excinfo.value.cause, httpx.ConnectError)


@pytest.mark.asyncio
async def test_timeout_maps_to_transport_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(TransportTimeoutError) as excinfo:
        await _transport(handler).send(RequestConfig(url="https://api.test/x", timeout=0.5))

    assert excinfo.value.code == 6001


@pytest.mark.asyncio
async def test_owned_client_is_closed_but_borrowed_client_is_not() -> None:
    borrowed = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    await HttpxTransport(borrowed).aclose()
    assert not borrowed.is_closed

    owned = HttpxTransport()
    await owned.aclose()
    assert owned.httpx_client.is_closed
    await borrowed.aclose()
