from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from txstress.errors import ConfirmationTimeout, FatalError, SubmissionError
from txstress.models import Receipt, Request
from txstress.target import JsonRpcTarget


class FakeNode:
    """Minimal Ethereum JSON-RPC node."""

    def __init__(self, receipt_after=0, status="0x1", block="0x10", head="0x12"):
        self.calls = []
        self.receipt_after = receipt_after
        self.status = status
        self.block = block
        self.head = head
        self.receipt_polls = 0

    def result_for(self, method, params):
        if method == "eth_accounts":
            return ["0xnodeaccount"]
        if method == "eth_getTransactionCount":
            return "0x5"
        if method == "eth_sendTransaction":
            return "0x" + "ab" * 32
        if method == "eth_getTransactionReceipt":
            self.receipt_polls += 1
            if self.receipt_polls <= self.receipt_after:
                return None
            return {"blockNumber": self.block, "status": self.status}
        if method == "eth_blockNumber":
            return self.head
        return None

    async def handle(self, request):
        body = await request.json()
        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        # nonce 7 is always rejected
        if method == "eth_sendTransaction" and params[0]["nonce"] == "0x7":
            return web.json_response({
                "jsonrpc": "2.0",
                "id": body["id"],
                "error": {"code": -32000, "message": "nonce too low"},
            })
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": self.result_for(method, params)})


@asynccontextmanager
async def serve(node, **kwargs):
    app = web.Application()
    app.router.add_post("/", node.handle)
    server = TestServer(app)
    await server.start_server()
    try:
        async with JsonRpcTarget(str(server.make_url("/")), **kwargs) as target:
            yield target
    finally:
        await server.close()


def request(sequence):
    return Request(sequence=sequence, destination="0xdest", payload=10 ** 14)


@pytest.mark.asyncio
async def test_starting_sequence_for_sender():
    node = FakeNode()
    async with serve(node, sender="0xsender") as target:
        assert await target.get_starting_sequence() == 5

    assert node.calls == [("eth_getTransactionCount", ["0xsender", "pending"])]


@pytest.mark.asyncio
async def test_starting_sequence_uses_node_account():
    node = FakeNode()
    async with serve(node) as target:
        assert await target.get_starting_sequence() == 5
        assert target.sender == "0xnodeaccount"

    assert [method for method, _ in node.calls] == ["eth_accounts", "eth_getTransactionCount"]


@pytest.mark.asyncio
async def test_submit_sends_quantities():
    node = FakeNode()
    async with serve(node, sender="0xsender") as target:
        handle = await target.submit(request(3), 21000, {"max_fee_per_gas": 50, "max_priority_fee_per_gas": 1})

    assert handle == "0x" + "ab" * 32
    method, params = node.calls[-1]
    assert method == "eth_sendTransaction"
    assert params[0] == {
        "from": "0xsender",
        "to": "0xdest",
        "value": hex(10 ** 14),
        "nonce": "0x3",
        "gas": "0x5208",
        "maxFeePerGas": "0x32",
        "maxPriorityFeePerGas": "0x1",
    }


@pytest.mark.asyncio
async def test_submit_error_is_submission_error():
    async with serve(FakeNode(), sender="0xsender") as target:
        with pytest.raises(SubmissionError) as exc_info:
            await target.submit(request(7), 21000, {})

    assert exc_info.value.reason == "nonce too low"


@pytest.mark.asyncio
async def test_await_confirmation_polls_until_receipt():
    node = FakeNode(receipt_after=2)
    async with serve(node, poll_interval=0.01) as target:
        receipt = await target.await_confirmation("0xhandle", 1, timeout=2.0)

    assert receipt == Receipt(grouping_key=16, status_ok=True)
    assert node.receipt_polls == 3


@pytest.mark.asyncio
async def test_failed_status_receipt():
    async with serve(FakeNode(status="0x0"), poll_interval=0.01) as target:
        receipt = await target.await_confirmation("0xhandle", 1, timeout=2.0)

    assert not receipt.status_ok


@pytest.mark.asyncio
async def test_confirmation_depth():
    node = FakeNode(block="0x10", head="0x12")
    async with serve(node, poll_interval=0.01) as target:
        receipt = await target.await_confirmation("0xhandle", 3, timeout=2.0)
        assert receipt.grouping_key == 16
        assert await target.get_current_group_number() == 18

        node.head = "0x10"
        with pytest.raises(ConfirmationTimeout):
            await target.await_confirmation("0xhandle", 3, timeout=0.05)


@pytest.mark.asyncio
async def test_confirmation_timeout():
    async with serve(FakeNode(receipt_after=1000), poll_interval=0.01) as target:
        with pytest.raises(ConfirmationTimeout):
            await target.await_confirmation("0xhandle", 1, timeout=0.05)


@pytest.mark.asyncio
async def test_unreachable_target_is_fatal():
    async with JsonRpcTarget("http://127.0.0.1:1", max_connect_attempts=2, retry_delay=0.01) as target:
        with pytest.raises(FatalError):
            await target.get_starting_sequence("0xsender")


def test_rpc_url_from_environment(monkeypatch):
    monkeypatch.setenv("RPC_URL", "http://node.example:8545")

    assert JsonRpcTarget().url == "http://node.example:8545"


@pytest.mark.asyncio
async def test_submit_from_request_sender():
    node = FakeNode()
    async with serve(node, sender="0xsender") as target:
        assert await target.get_accounts() == ["0xnodeaccount"]
        request = Request(sequence=4, destination="0xdest", payload=1, sender="0xother")
        await target.submit(request, 21000, {})

    method, params = node.calls[-1]
    assert params[0]["from"] == "0xother"
    assert params[0]["nonce"] == "0x4"
