"""
JSON-RPC access to the chain.

``_RpcClient`` is a thin wrapper around ``httpx.AsyncClient``; ``ChainReader``
exposes the handful of reads and the raw-transaction submission the runtime
needs. Network failures surface as :class:`NetworkError` and are not retried
here.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Sequence

import httpx
from eth_utils import to_checksum_address

from dblog_delegation.contracts import decode_result, encode_call
from dblog_delegation.errors import NetworkError, TransactionRevertedError
from dblog_delegation.types import Receipt

logger = logging.getLogger(__name__)


class RpcError(NetworkError):
    """The node answered with a JSON-RPC ``error`` object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class _RpcClient:
    """Thin wrapper around httpx for JSON-RPC calls."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Sequence[Any] | None = None) -> Any:
        """Send one JSON-RPC request and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params or []),
        }
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise NetworkError(f"RPC {method} failed: {e.__class__.__name__}") from e

        # Don't echo the response body: nodes sometimes include request data
        if response.status_code >= 400:
            raise NetworkError(f"RPC {method} failed ({response.status_code})")

        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError(f"RPC {method} returned invalid JSON") from e

        if body.get("error"):
            err = body["error"]
            raise RpcError(
                err.get("message", "RPC error"),
                code=err.get("code"),
                data=err.get("data"),
            )
        return body.get("result")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    return int(value, 16) if str(value).startswith("0x") else int(value)


class ChainReader:
    """Chain reads plus raw-transaction submission for locally signed txs."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        confirmation_timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._rpc = _RpcClient(rpc_url, timeout=timeout, client=client)
        self._poll_interval = poll_interval
        self._confirmation_timeout = confirmation_timeout

    async def get_gas_price(self) -> int:
        return _to_int(await self._rpc.call("eth_gasPrice"))

    async def get_block_timestamp(self) -> int:
        """Timestamp of the latest block; the chain's notion of "now"."""
        block = await self._rpc.call("eth_getBlockByNumber", ["latest", False])
        if not block:
            raise NetworkError("Latest block unavailable")
        return _to_int(block["timestamp"])

    async def get_balance(self, address: str) -> int:
        return _to_int(
            await self._rpc.call("eth_getBalance", [to_checksum_address(address), "latest"])
        )

    async def get_transaction_count(self, address: str) -> int:
        return _to_int(
            await self._rpc.call(
                "eth_getTransactionCount", [to_checksum_address(address), "pending"]
            )
        )

    async def call(self, to: str, data: str, sender: str | None = None) -> str:
        tx: dict[str, Any] = {"to": to_checksum_address(to), "data": data}
        if sender:
            tx["from"] = to_checksum_address(sender)
        return await self._rpc.call("eth_call", [tx, "latest"])

    async def read_contract(
        self,
        address: str,
        signature: str,
        args: Sequence[Any],
        output_types: Sequence[str],
    ) -> tuple[Any, ...]:
        """``eth_call`` a view function and ABI-decode its result."""
        data = await self.call(address, encode_call(signature, args))
        return decode_result(output_types, data)

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return _to_int(await self._rpc.call("eth_estimateGas", [tx]))

    async def send_raw_transaction(self, raw: bytes) -> str:
        return await self._rpc.call("eth_sendRawTransaction", ["0x" + bytes(raw).hex()])

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        """Poll until ``tx_hash`` is mined; raise if it reverted."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirmation_timeout
        while True:
            raw = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
            if raw:
                receipt = Receipt(
                    tx_hash=raw.get("transactionHash", tx_hash),
                    status=_to_int(raw.get("status", "0x1")),
                    block_number=_to_int(raw.get("blockNumber")),
                    gas_used=_to_int(raw.get("gasUsed")),
                )
                if not receipt.succeeded:
                    raise TransactionRevertedError(f"Transaction {tx_hash} reverted", tx_hash)
                return receipt
            if loop.time() >= deadline:
                raise NetworkError(f"Timed out waiting for transaction {tx_hash}")
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        await self._rpc.close()
