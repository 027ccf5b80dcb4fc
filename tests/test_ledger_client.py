import asyncio
import json

import httpx
import pytest
from pydantic import ValidationError

from wager_client.clients.ledger_client import LedgerClient, classify_response
from wager_client.errors import RemoteError, RemoteErrorKind
from wager_client.security import signature_is_valid


def _client(handler, token="identity"):
    return LedgerClient(identity_token=token, base_url="http://ledger.test", transport=httpx.MockTransport(handler))


def _run(coro_fn, handler, token="identity"):
    async def run():
        client = _client(handler, token)
        try:
            return await coro_fn(client)
        finally:
            await client.aclose()

    return asyncio.run(run())


@pytest.mark.parametrize(
    "status, body, kind",
    [
        (401, {"error": {"code": "expired_delegation"}}, RemoteErrorKind.CREDENTIAL),
        (400, {"error": {"code": "signature_verification_failed"}}, RemoteErrorKind.CREDENTIAL),
        (403, {}, RemoteErrorKind.CREDENTIAL),
        (402, {"detail": {"code": "insufficient_funds"}}, RemoteErrorKind.INSUFFICIENT_FUNDS),
        (404, {}, RemoteErrorKind.NOT_FOUND),
        (429, {}, RemoteErrorKind.RATE_LIMITED),
        (503, {}, RemoteErrorKind.SERVER),
        (409, {"error": {"code": "session_active"}}, RemoteErrorKind.REJECTED),
    ],
)
def test_classify_response(status, body, kind):
    response = httpx.Response(status, json=body)
    error = classify_response(response)
    assert error.kind is kind
    assert error.status_code == status


def test_timeout_and_connect_errors_are_transient():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RemoteError) as slow:
        _run(lambda c: c.get_balance("player-1"), timeout)
    with pytest.raises(RemoteError) as down:
        _run(lambda c: c.get_balance("player-1"), refused)

    assert slow.value.kind is RemoteErrorKind.TIMEOUT
    assert down.value.kind is RemoteErrorKind.CONNECTIVITY
    assert slow.value.transient and down.value.transient


def test_debit_is_signed_and_carries_idempotency_key():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["key"] = request.headers.get("Idempotency-Key")
        seen["valid"] = signature_is_valid(
            json.loads(request.content), request.headers["X-Signature"], request.headers["X-Timestamp"]
        )
        seen["path"] = request.url.path
        return httpx.Response(200, json={"status": "OK", "remoteReference": "r-1"})

    payload = {"accountId": "player-1", "amount": 100_000_000, "variant": "wheel", "params": {}, "idempotencyKey": "w-1-debit"}
    response = _run(lambda c: c.debit("w-1", payload, "w-1-debit"), handler)

    assert response.remoteReference == "r-1"
    assert seen == {"auth": "Bearer identity", "key": "w-1-debit", "valid": True, "path": "/wagers/w-1/debit"}


def test_anonymous_client_sends_no_identity():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"status": "ok", "rootKey": "root-1"})

    async def handshake(client):
        status = await client.handshake()
        return status, client.root_key, client.authenticated

    status, root_key, authenticated = _run(handshake, handler, token=None)

    assert seen["auth"] is None
    assert status.status == "ok"
    assert root_key == "root-1"
    assert authenticated is False


def test_no_active_session_is_none():
    def handler(request):
        return httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"})

    assert _run(lambda c: c.get_active_session("player-1"), handler) is None


def test_balance_must_be_integer():
    def handler(request):
        return httpx.Response(200, json={"accountId": "player-1", "balance": "12.5"})

    with pytest.raises(ValidationError):
        _run(lambda c: c.get_balance("player-1"), handler)
