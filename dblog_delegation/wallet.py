"""
Primary wallet collaborator.

The runtime only needs three things from the user's wallet: its address, a
way to ask it to send a transaction, and a way to wait for that transaction.
``RpcWallet`` implements them over an EIP-1193 style JSON-RPC signer endpoint
(a local node with unlocked accounts, or a signer such as Frame or Clef).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Protocol, TypeVar, runtime_checkable

import httpx
from eth_utils import to_checksum_address

from dblog_delegation.chain import ChainReader, RpcError, _RpcClient
from dblog_delegation.errors import (
    USER_REJECTED_CODE,
    AuthorizationError,
    DelegationError,
    UserRejectionError,
    WalletTimeoutError,
    classify_error,
)
from dblog_delegation.types import Receipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class WalletProvider(Protocol):
    """What the runtime needs from the user's primary wallet."""

    async def get_current_address(self) -> str: ...

    async def request_transaction(self, to: str, value: int, data: str | None = None) -> str: ...

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt: ...


async def wallet_prompt(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await a user-interactive wallet step, mapping failures onto the taxonomy.

    A prompt nobody answers within ``timeout`` becomes
    :class:`WalletTimeoutError`; a declined prompt becomes
    :class:`UserRejectionError`. Cancellation propagates untouched.
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise WalletTimeoutError(f"Wallet did not respond within {timeout:.0f}s") from e
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise classify_error(e)


async def current_wallet_address(wallet: WalletProvider, timeout: float | None = None) -> str:
    """Connected wallet address, or :class:`AuthorizationError` if there is none."""
    try:
        return await wallet_prompt(wallet.get_current_address(), timeout)
    except UserRejectionError:
        raise
    except DelegationError as e:
        raise AuthorizationError(f"Wallet not available: {e}") from e


class RpcWallet:
    """Primary wallet reached over JSON-RPC (``eth_sendTransaction``)."""

    def __init__(
        self,
        signer_url: str,
        chain: ChainReader,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._rpc = _RpcClient(signer_url, timeout=timeout, client=client)
        self._chain = chain

    async def get_current_address(self) -> str:
        accounts = await self._request("eth_accounts")
        if not accounts:
            accounts = await self._request("eth_requestAccounts")
        if not accounts:
            raise AuthorizationError("No accounts found in wallet")
        return to_checksum_address(accounts[0])

    async def request_transaction(self, to: str, value: int, data: str | None = None) -> str:
        sender = await self.get_current_address()
        tx: dict[str, Any] = {
            "from": sender,
            "to": to_checksum_address(to),
            "value": hex(value),
        }
        if data:
            tx["data"] = data
        tx_hash = await self._request("eth_sendTransaction", [tx])
        logger.debug("Wallet submitted transaction %s", tx_hash)
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt:
        return await self._chain.wait_for_receipt(tx_hash)

    async def _request(self, method: str, params: list[Any] | None = None) -> Any:
        try:
            return await self._rpc.call(method, params)
        except RpcError as e:
            if e.code == USER_REJECTED_CODE:
                raise UserRejectionError("User rejected the request.") from e
            raise

    async def close(self) -> None:
        await self._rpc.close()
