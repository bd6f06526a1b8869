"""
Boundary to the transaction-processing system under test.

TargetSystem is the contract the core consumes. JsonRpcTarget implements it
over Ethereum-style JSON-RPC with a pooled aiohttp session; the node signs
with its own managed sender account.
"""

import asyncio
import itertools
import logging
import os
from typing import Any, Dict, Hashable, List, Optional, Protocol

import aiohttp

from .errors import ConfirmationTimeout, FatalError, SubmissionError
from .models import Receipt, Request

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "http://localhost:8545"

PRICING_FIELDS = {
    "gas_price": "gasPrice",
    "max_fee_per_gas": "maxFeePerGas",
    "max_priority_fee_per_gas": "maxPriorityFeePerGas",
    "chain_id": "chainId",
    "type": "type",
}


class TargetSystem(Protocol):
    """Operations the load generator needs from the system under test."""

    async def get_starting_sequence(self, sender: Any = None) -> int:
        ...

    async def submit(self, request: Request, resource_limit: int, pricing: Dict[str, Any]) -> Hashable:
        """Return a pending handle, or raise SubmissionError."""
        ...

    async def await_confirmation(self, handle: Hashable, confirmations_required: int, timeout: float) -> Receipt:
        """Return the receipt, or raise ConfirmationTimeout."""
        ...


class JsonRpcError(Exception):
    """Error object returned in a JSON-RPC response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


def _to_quantity(value: Any) -> Any:
    return hex(value) if isinstance(value, int) and not isinstance(value, bool) else value


def _from_quantity(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16) if isinstance(value, str) else int(value)


class JsonRpcTarget:
    """
    JSON-RPC client for an Ethereum-compatible node.

    Connection failures are retried with exponential backoff; once
    `max_connect_attempts` consecutive attempts fail the call raises FatalError.
    Use as an async context manager so the session is closed.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
        max_connect_attempts: int = 5,
        retry_delay: float = 1.0,
        connection_limit: int = 100,
    ):
        self.url = url or os.environ.get("RPC_URL", DEFAULT_RPC_URL)
        self.sender = sender
        self.timeout = aiohttp.ClientTimeout(total=timeout, connect=10)
        self.poll_interval = poll_interval
        self.max_connect_attempts = max_connect_attempts
        self.retry_delay = retry_delay
        self.connection_limit = connection_limit
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcTarget":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def open(self):
        if self._session is None:
            connector = aiohttp.TCPConnector(
                limit=self.connection_limit,
                limit_per_host=self.connection_limit,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    # =========================================================================
    # TRANSPORT
    # =========================================================================
    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Single JSON-RPC call. Raises JsonRpcError for error responses."""
        if self._session is None:
            await self.open()

        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        attempts = 0
        last_error = None

        while attempts < self.max_connect_attempts:
            try:
                async with self._session.post(self.url, json=body) as response:
                    payload = await response.json(content_type=None)
                break
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                attempts += 1
                logger.debug("%s to %s failed (attempt %d): %s", method, self.url, attempts, last_error)
                if attempts < self.max_connect_attempts:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempts - 1)))
        else:
            logger.error("Target %s unreachable after %d attempts", self.url, attempts)
            raise FatalError(f"{self.url} unreachable after {attempts} attempts: {last_error}")

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            raise JsonRpcError(error.get("code", 0), error.get("message", ""), error.get("data"))
        return payload.get("result")

    # =========================================================================
    # TARGET OPERATIONS
    # =========================================================================
    async def get_starting_sequence(self, sender: Any = None) -> int:
        address = sender or self.sender
        if address is None:
            accounts = await self.get_accounts()
            if not accounts:
                raise FatalError(f"{self.url} exposes no managed accounts and no sender was given")
            address = accounts[0]
            self.sender = address
        return _from_quantity(await self.call("eth_getTransactionCount", [address, "pending"]))

    async def get_accounts(self) -> List[str]:
        """Accounts managed (and signed for) by the node."""
        return await self.call("eth_accounts") or []

    async def submit(self, request: Request, resource_limit: int, pricing: Dict[str, Any]) -> Hashable:
        tx = {
            "from": request.sender or self.sender,
            "to": request.destination,
            "value": _to_quantity(request.payload or 0),
            "nonce": _to_quantity(request.sequence),
            "gas": _to_quantity(resource_limit),
        }
        for key, value in (pricing or {}).items():
            tx[PRICING_FIELDS.get(key, key)] = _to_quantity(value)

        try:
            return await self.call("eth_sendTransaction", [tx])
        except JsonRpcError as e:
            raise SubmissionError(e.message or str(e)) from e

    async def await_confirmation(self, handle: Hashable, confirmations_required: int, timeout: float) -> Receipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        receipt = None
        while True:
            receipt = await self.call("eth_getTransactionReceipt", [handle])
            if receipt:
                block = _from_quantity(receipt.get("blockNumber"))
                if confirmations_required <= 1:
                    break
                head = await self.get_current_group_number()
                if head - block + 1 >= confirmations_required:
                    break
            if loop.time() + self.poll_interval > deadline:
                raise ConfirmationTimeout(handle, timeout)
            await asyncio.sleep(self.poll_interval)

        return Receipt(
            grouping_key=_from_quantity(receipt.get("blockNumber")),
            status_ok=_from_quantity(receipt.get("status", "0x1")) == 1,
        )

    async def get_current_group_number(self) -> int:
        return _from_quantity(await self.call("eth_blockNumber"))
