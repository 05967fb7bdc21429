"""
Unit tests for the RPC client. The HTTP session is mocked.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import make_config
from slipstream.rpc import (
    ConfirmationTimeoutError,
    RPCClient,
    RPCError,
    TransactionFailedError,
)


class FakeResponse:

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    def raise_for_status(self):
        pass

    async def json(self):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def make_client(response=None):
    client = RPCClient(make_config())
    session = MagicMock()
    session.closed = False
    session.post = MagicMock(return_value=response)
    client._session = session
    return client


def statuses(*entries):
    return {"context": {"slot": 1}, "value": list(entries)}


@pytest.mark.asyncio
class TestRequest:

    async def test_returns_result(self):
        client = make_client(FakeResponse(200, {"jsonrpc": "2.0", "result": {"value": 42}}))

        assert await client.get_balance("addr") == 42
        body = client._session.post.call_args.kwargs["json"]
        assert body["method"] == "getBalance"

    async def test_json_rpc_error(self):
        client = make_client(FakeResponse(200, {"error": {"code": -32602, "message": "bad params"}}))

        with pytest.raises(RPCError, match="bad params"):
            await client.get_balance("addr")

    async def test_rate_limit_starts_backoff(self):
        client = make_client(FakeResponse(429, {}))

        with pytest.raises(RPCError):
            await client.get_balance("addr")

        assert client._consecutive_errors == 1
        assert client._backoff_until > 0

    async def test_timeout_becomes_rpc_error(self):
        client = make_client()
        client._session.post = MagicMock(side_effect=asyncio.TimeoutError())

        with pytest.raises(RPCError, match="getBalance"):
            await client.get_balance("addr")

        assert client._consecutive_errors == 1

    async def test_non_json_body_becomes_rpc_error(self):
        response = FakeResponse(200, None)
        response.json = AsyncMock(side_effect=ValueError("Expecting value"))
        client = make_client(response)

        with pytest.raises(RPCError, match="Expecting value"):
            await client.get_balance("addr")

        assert client._backoff_until > 0

    async def test_send_returns_signature(self):
        client = make_client(FakeResponse(200, {"result": "5igSig"}))

        assert await client.send_raw_transaction(b"\x00\x01", skip_preflight=True) == "5igSig"
        options = client._session.post.call_args.kwargs["json"]["params"][1]
        assert options["skipPreflight"] is True
        assert options["encoding"] == "base64"


@pytest.mark.asyncio
class TestConfirmTransaction:
    """Polling signature status up to the requested commitment."""

    async def test_confirmed(self):
        client = make_client()
        client._request = AsyncMock(return_value=statuses(
            {"err": None, "confirmationStatus": "confirmed"}
        ))

        assert await client.confirm_transaction("sig") == "confirmed"

    async def test_finalized_satisfies_confirmed(self):
        client = make_client()
        client._request = AsyncMock(return_value=statuses(
            {"err": None, "confirmationStatus": "finalized"}
        ))

        assert await client.confirm_transaction("sig", commitment="confirmed") == "finalized"

    async def test_on_chain_error(self):
        client = make_client()
        client._request = AsyncMock(return_value=statuses(
            {"err": {"InstructionError": [3, {"Custom": 6001}]}, "confirmationStatus": "confirmed"}
        ))

        with pytest.raises(TransactionFailedError) as exc_info:
            await client.confirm_transaction("sig")

        assert "6001" in str(exc_info.value)

    async def test_expired_blockhash(self):
        client = make_client()

        async def request(method, params):
            if method == "getBlockHeight":
                return 2_000
            return statuses(None)

        client._request = AsyncMock(side_effect=request)

        with pytest.raises(ConfirmationTimeoutError):
            await client.confirm_transaction("sig", last_valid_block_height=1_000)

    async def test_timeout(self):
        client = make_client()
        client._request = AsyncMock(return_value=statuses(None))

        with pytest.raises(ConfirmationTimeoutError):
            await client.confirm_transaction("sig", timeout_seconds=0)
