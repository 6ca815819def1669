"""Tests for the block engine client against a local aiohttp server."""

import asyncio
import base64
from fractions import Fraction
from types import SimpleNamespace

import pytest
from aiohttp import test_utils, web
from solders.hash import Hash
from solders.transaction import Transaction

from core.events import ExitTierAction
from core.types import Venue
from execution.jito_client import BundleRejected, JitoClient, SubmissionError, SubmissionTimeout


class FakeRpc:
    def __init__(self):
        self.closed = False

    async def get_latest_blockhash(self, commitment=None):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.new_unique()))

    async def close(self):
        self.closed = True


class FailingRpc(FakeRpc):
    async def get_latest_blockhash(self, commitment=None):
        raise ConnectionError("rpc down")


@pytest.fixture
def bundle(builder, mint):
    action = ExitTierAction(
        token=mint, venue=Venue.PUMP_FUN, correlation_id="sig9:0", slot=900,
        reference_price=Fraction(2000), percent=20, tier_index=0, token_amount=20_000,
    )
    (bundle,) = builder.build([action])
    return bundle


async def start_block_engine(handler):
    app = web.Application()
    app.router.add_post("/api/v1/bundles", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


class TestJitoClient:
    def test_encode_signs_one_transaction(self, bundle, operator, logger):
        client = JitoClient("http://localhost", operator, FakeRpc(), logger)

        encoded = client.encode(bundle, Hash.new_unique())

        transaction = Transaction.from_bytes(base64.b64decode(encoded))
        assert transaction.message.account_keys[0] == operator.pubkey()
        assert len(transaction.message.instructions) == len(bundle)

    @pytest.mark.asyncio
    async def test_accepted_bundle(self, bundle, operator, logger):
        requests = []

        async def handler(request):
            requests.append(await request.json())
            return web.json_response({"jsonrpc": "2.0", "id": 1, "result": "bundle-123"})

        server = await start_block_engine(handler)
        rpc = FakeRpc()
        client = JitoClient(str(server.make_url("")), operator, rpc, logger)
        try:
            result = await client.send_bundle(bundle)
        finally:
            await client.close()
            await server.close()

        assert result.accepted
        assert result.bundle_id == "bundle-123"
        (payload,) = requests
        assert payload["method"] == "sendBundle"
        assert payload["params"][1] == {"encoding": "base64"}
        assert len(payload["params"][0]) == 1
        assert rpc.closed

    @pytest.mark.asyncio
    async def test_json_rpc_error_is_not_accepted(self, bundle, operator, logger):
        async def handler(request):
            return web.json_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bundle expired"}})

        server = await start_block_engine(handler)
        client = JitoClient(str(server.make_url("")), operator, FakeRpc(), logger)
        try:
            result = await client.send_bundle(bundle)
        finally:
            await client.close()
            await server.close()

        assert not result.accepted
        assert result.reason == "bundle expired"

    @pytest.mark.asyncio
    async def test_http_error_rejects(self, bundle, operator, logger):
        async def handler(request):
            return web.Response(status=429, text="rate limited")

        server = await start_block_engine(handler)
        client = JitoClient(str(server.make_url("")), operator, FakeRpc(), logger)
        try:
            with pytest.raises(BundleRejected, match="429"):
                await client.send_bundle(bundle)
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_slow_block_engine_times_out(self, bundle, operator, logger):
        async def handler(request):
            await asyncio.sleep(1.0)
            return web.json_response({"result": "late"})

        server = await start_block_engine(handler)
        client = JitoClient(str(server.make_url("")), operator, FakeRpc(), logger, timeout=0.1)
        try:
            with pytest.raises(SubmissionTimeout):
                await client.send_bundle(bundle)
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_blockhash_failure(self, bundle, operator, logger):
        client = JitoClient("http://localhost", operator, FailingRpc(), logger)

        with pytest.raises(SubmissionError, match="blockhash"):
            await client.send_bundle(bundle)
