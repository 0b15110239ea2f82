from __future__ import annotations

import json

import httpx
import pytest

from roadside_sync.client.booking_api import BookingApi
from roadside_sync.client.credentials import StaticCredentialSource
from roadside_sync.shared.errors import BookingRejectedError, ConfigurationError, TransportError
from roadside_sync.shared.models import Role


def make_api(handler, token: str | None = "tok") -> BookingApi:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return BookingApi("http://api.test", StaticCredentialSource("u-1", Role.CUSTOMER, token), client=client)


@pytest.mark.asyncio
async def test_submit_posts_request_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"bookingId": "BK-1", "status": "pending"})

    api = make_api(handler)
    assert await api.submit({"serviceType": "towing"}) == "BK-1"
    await api.aclose()

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/api/jobs/customer/finding-provider"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert json.loads(seen[0].content) == {"serviceType": "towing"}


@pytest.mark.asyncio
async def test_submit_rejection_carries_server_message() -> None:
    api = make_api(lambda r: httpx.Response(422, json={"message": "No providers in your area"}))

    with pytest.raises(BookingRejectedError) as excinfo:
        await api.submit({"serviceType": "towing"})
    assert excinfo.value.message == "No providers in your area"
    assert excinfo.value.status_code == 422
    await api.aclose()


@pytest.mark.asyncio
async def test_submit_rejection_without_json_body_uses_default_message() -> None:
    api = make_api(lambda r: httpx.Response(500, text="<html>oops</html>"))

    with pytest.raises(BookingRejectedError) as excinfo:
        await api.submit({})
    assert excinfo.value.message == "Failed to create booking"
    await api.aclose()


@pytest.mark.asyncio
async def test_submit_without_booking_id_is_transport_error() -> None:
    api = make_api(lambda r: httpx.Response(200, json={"status": "pending"}))

    with pytest.raises(TransportError):
        await api.submit({})
    await api.aclose()


@pytest.mark.asyncio
async def test_network_failure_is_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api = make_api(handler)
    with pytest.raises(TransportError):
        await api.submit({})
    with pytest.raises(TransportError):
        await api.fetch_status("BK-1")
    await api.aclose()


@pytest.mark.asyncio
async def test_missing_token_is_configuration_error() -> None:
    api = make_api(lambda r: httpx.Response(200, json={}), token=None)

    with pytest.raises(ConfigurationError):
        await api.fetch_status("BK-1")
    await api.aclose()


@pytest.mark.asyncio
async def test_fetch_status_returns_document() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/jobs/BK-1/status"
        return httpx.Response(200, json={"bookingId": "BK-1", "status": "searching"})

    api = make_api(handler)
    assert await api.fetch_status("BK-1") == {"bookingId": "BK-1", "status": "searching"}
    await api.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(503, json={"message": "busy"}), httpx.Response(200, text="not json")],
)
async def test_fetch_status_failures_are_transient(response: httpx.Response) -> None:
    api = make_api(lambda r: response)

    with pytest.raises(TransportError):
        await api.fetch_status("BK-1")
    await api.aclose()


@pytest.mark.asyncio
async def test_fetch_status_non_object_body_has_no_status() -> None:
    api = make_api(lambda r: httpx.Response(200, json=["searching"]))
    assert await api.fetch_status("BK-1") == {"status": None, "body": ["searching"]}
    await api.aclose()
