import asyncio

import httpx
import pytest

from payment_api.errors import TransientInfraError
from payment_api.provider_client import MercadoPagoClient


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    async def fake_sleep(_):
        return None

    monkeypatch.setattr("payment_api.provider_client.asyncio.sleep", fake_sleep)


def _client(handler, **kwargs) -> MercadoPagoClient:
    return MercadoPagoClient(access_token="token-123", transport=httpx.MockTransport(handler), **kwargs)


def test_fetch_payment_sends_bearer_credential():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"id": 555, "status": "approved"})

    payment = asyncio.run(_client(handler).fetch_payment("555"))

    assert payment == {"id": 555, "status": "approved"}
    assert seen == {"path": "/v1/payments/555", "auth": "Bearer token-123"}


# Retry/backoff (500 -> 500 -> 200).
def test_fetch_payment_retries_server_errors():
    statuses = [500, 502, 200]
    calls = {"invokes": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[calls["invokes"]]
        calls["invokes"] += 1
        return httpx.Response(status, json={"id": 555})

    payment = asyncio.run(_client(handler, max_retries=3, retry_backoff_seconds=1).fetch_payment("555"))

    assert calls["invokes"] == 3
    assert payment == {"id": 555}


def test_fetch_payment_gives_up_after_max_retries():
    calls = {"invokes": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["invokes"] += 1
        return httpx.Response(503)

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler, max_retries=2).fetch_payment("555"))
    assert calls["invokes"] == 3


def test_fetch_payment_respects_retry_after_on_429(monkeypatch):
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr("payment_api.provider_client.asyncio.sleep", record_sleep)
    responses = [httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json={"id": 1})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    asyncio.run(_client(handler, max_retries=1).fetch_payment("1"))

    assert waits == [7.0]


def test_fetch_payment_client_error_is_retryable_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "not found"})

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler).fetch_payment("555"))


def test_fetch_payment_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler).fetch_payment("555"))


def test_fetch_payment_connection_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler).fetch_payment("555"))


def test_fetch_payment_without_credential_fails(monkeypatch):
    from payment_api.config import settings

    monkeypatch.setattr(settings, "mp_access_token", None)
    client = MercadoPagoClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))

    with pytest.raises(TransientInfraError):
        asyncio.run(client.fetch_payment("555"))


def test_fetch_payment_falls_back_to_backoff_for_dated_retry_after(monkeypatch):
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr("payment_api.provider_client.asyncio.sleep", record_sleep)
    responses = [
        httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}),
        httpx.Response(200, json={"id": 1}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    payment = asyncio.run(_client(handler, max_retries=1, retry_backoff_seconds=0.5).fetch_payment("1"))

    assert payment == {"id": 1}
    assert waits == [0.5]


def test_fetch_payment_unreadable_body_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>maintenance</html>")

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler).fetch_payment("555"))


def test_fetch_payment_non_object_body_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": 555}])

    with pytest.raises(TransientInfraError):
        asyncio.run(_client(handler).fetch_payment("555"))
