"""Tests for the Chapa HTTP client."""

import json
import httpx
import pytest
from src.models.payment import GatewayStatus
from src.services.chapa_client import ChapaClient
from src.utils.errors import GatewayError
from tests.utils.helpers import chapa_verify_response

BASE_URL = "https://api.chapa.test/v1"
SECRET = "CHASECK_TEST-unit"


def _client(handler, **kwargs):
    kwargs.setdefault("secret_key", SECRET)
    return ChapaClient(
        base_url=BASE_URL,
        max_retries=kwargs.pop("max_retries", 2),
        backoff_base_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_initialize_checkout_posts_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": "success",
            "data": {"checkout_url": "https://checkout.chapa.co/checkout/payment/abc"},
        })

    client = _client(handler)
    url = await client.initialize_checkout(
        tx_ref="MUYA_1", amount=240, currency="ETB",
        email=" abebe@example.com ", first_name="Abebe", last_name="Kebede",
        phone_number="0911 234 567", meta={"task_id": "t1"},
    )
    await client.close()

    assert url == "https://checkout.chapa.co/checkout/payment/abc"
    assert seen["path"] == "/v1/transaction/initialize"
    assert seen["auth"] == f"Bearer {SECRET}"
    assert seen["body"]["amount"] == "240.00"
    assert seen["body"]["email"] == "abebe@example.com"
    assert seen["body"]["phone_number"] == "0911234567"
    assert seen["body"]["meta"] == {"task_id": "t1"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_initialize_rejected_by_gateway():
    def handler(request):
        return httpx.Response(400, json={"status": "failed", "message": "Invalid currency"})

    client = _client(handler)
    with pytest.raises(GatewayError, match="Invalid currency") as exc_info:
        await client.initialize_checkout(tx_ref="MUYA_1", amount=10, currency="XXX", email="a@b.c", first_name="A")
    await client.close()

    assert exc_info.value.details["status_code"] == 400


@pytest.mark.unit
@pytest.mark.asyncio
async def test_initialize_missing_checkout_url():
    def handler(request):
        return httpx.Response(200, json={"status": "success", "data": {}})

    client = _client(handler)
    with pytest.raises(GatewayError, match="checkout_url"):
        await client.initialize_checkout(tx_ref="MUYA_1", amount=10, currency="ETB", email="a@b.c", first_name="A")
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_initialize_requires_credentials():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client(handler, secret_key="")
    assert client.configured is False
    with pytest.raises(GatewayError, match="not configured"):
        await client.initialize_checkout(tx_ref="MUYA_1", amount=10, currency="ETB", email="a@b.c", first_name="A")
    await client.close()

    assert calls == []


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("raw,expected", [
    ("success", GatewayStatus.COMPLETED),
    ("pending", GatewayStatus.PENDING),
    ("failed", GatewayStatus.FAILED),
])
async def test_get_status_normalises(raw, expected):
    def handler(request):
        assert request.url.path == "/v1/transaction/verify/MUYA_1"
        return httpx.Response(200, json=chapa_verify_response("MUYA_1", status=raw))

    client = _client(handler)
    assert await client.get_status("MUYA_1") == expected
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_transaction_is_pending():
    def handler(request):
        return httpx.Response(404, json={"message": "Invalid transaction or Transaction not found"})

    client = _client(handler)
    assert await client.get_status("MUYA_new") == GatewayStatus.PENDING
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_server_error_raises():
    def handler(request):
        return httpx.Response(500, json={"message": "boom"})

    client = _client(handler)
    with pytest.raises(GatewayError):
        await client.get_status("MUYA_1")
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    responses = iter([
        httpx.Response(429, json={"message": "Too many requests"}),
        httpx.Response(200, json=chapa_verify_response("MUYA_1")),
    ])

    def handler(request):
        return next(responses)

    client = _client(handler)
    assert await client.get_status("MUYA_1") == GatewayStatus.COMPLETED
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, json={"message": "Too many requests"})

    client = _client(handler, max_retries=2)
    with pytest.raises(GatewayError):
        await client.verify("MUYA_1")
    await client.close()

    assert len(calls) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_connection_error_becomes_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(GatewayError, match="Cannot connect"):
        await client.get_status("MUYA_1")
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_json_response_raises():
    def handler(request):
        return httpx.Response(502, text="<html>Bad gateway</html>")

    client = _client(handler)
    with pytest.raises(GatewayError, match="Invalid JSON"):
        await client.verify("MUYA_1")
    await client.close()
