"""
In-memory stand-ins for the chain, the primary wallet and the storage
network, plus fixtures wiring them into a runtime.
"""

from __future__ import annotations

import itertools
import time
from typing import Any

import pytest
from eth_abi import decode, encode
from eth_account import Account

from dblog_delegation.client import DelegationRuntime
from dblog_delegation.contracts import (
    GET_SESSION_KEY_DATA,
    REGISTER_SESSION_KEY,
    REVOKE_SESSION_KEY,
    SESSION_KEY_DATA_OUTPUT,
    decode_result,
    encode_call,
    operation_selector,
    selector,
)
from dblog_delegation.errors import AuthorizationError, UserRejectionError
from dblog_delegation.keystore import KeyStore
from dblog_delegation.types import ZERO_ADDRESS, DelegationConfig, FolderUpload, Receipt

OWNER = Account.from_key("0x" + "11" * 32).address
OTHER_OWNER = Account.from_key("0x" + "22" * 32).address

GAS_PRICE = 10**9


def _body(data: str) -> bytes:
    return bytes.fromhex(data[10:])


class FakeChain:
    """Balances, session-key grants and raw-transaction submission."""

    def __init__(self) -> None:
        self.gas_price = GAS_PRICE
        self.now = int(time.time())
        self.balances: dict[str, int] = {}
        self.grants: dict[str, tuple] = {}
        self.raw_transactions: list[bytes] = []
        self.estimates: list[dict[str, Any]] = []
        # Queue consumed by send_raw_transaction: an exception to raise, or None
        self.send_failures: list[Exception | None] = []
        self.call_error: Exception | None = None
        self._hashes = itertools.count(1)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_block_timestamp(self) -> int:
        return self.now

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    async def get_transaction_count(self, address: str) -> int:
        return 0

    async def call(self, to: str, data: str, sender: str | None = None) -> str:
        if self.call_error is not None:
            raise self.call_error
        assert data.startswith(selector(GET_SESSION_KEY_DATA))
        _owner, key = decode(["address", "address"], _body(data))
        record = self.grants.get(
            key.lower(), (ZERO_ADDRESS, 0, 0, ZERO_ADDRESS, [], 0, 0, 0)
        )
        return "0x" + encode([SESSION_KEY_DATA_OUTPUT], [record]).hex()

    async def read_contract(self, address, signature, args, output_types) -> tuple:
        return decode_result(output_types, await self.call(address, encode_call(signature, args)))

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        self.estimates.append(tx)
        return 100_000

    async def send_raw_transaction(self, raw: bytes) -> str:
        if self.send_failures:
            failure = self.send_failures.pop(0)
            if failure is not None:
                raise failure
        self.raw_transactions.append(raw)
        return f"0x{next(self._hashes):064x}"

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        return Receipt(tx_hash=tx_hash, status=1)

    async def close(self) -> None:
        pass

    def grant(
        self,
        key: str,
        *,
        valid_after: int | None = None,
        valid_until: int | None = None,
        target: str | None = None,
        selectors: list[str] | None = None,
        spending_limit: int = 10 * 10**18,
        spent: int = 0,
        nonce: int = 0,
    ) -> None:
        """Register ``key`` directly, bypassing the wallet."""
        config = DelegationConfig()
        ops = selectors if selectors is not None else [
            operation_selector(op) for op in config.allowed_operations
        ]
        self.grants[key.lower()] = (
            key,
            self.now - 10 if valid_after is None else valid_after,
            self.now + 3600 if valid_until is None else valid_until,
            target or config.target_contract_address,
            [bytes.fromhex(s[2:]) for s in ops],
            spending_limit,
            spent,
            nonce,
        )


class FakeWallet:
    """Primary wallet that applies registrations and transfers to a FakeChain."""

    def __init__(self, chain: FakeChain, address: str | None = OWNER) -> None:
        self.chain = chain
        self.address = address
        self.reject = False
        # Raised for plain value transfers only
        self.transfer_error: Exception | None = None
        self.prompts: list[dict[str, Any]] = []
        self._hashes = itertools.count(1)

    async def get_current_address(self) -> str:
        if self.address is None:
            raise AuthorizationError("No accounts found in wallet")
        return self.address

    async def request_transaction(self, to: str, value: int, data: str | None = None) -> str:
        self.prompts.append({"to": to, "value": value, "data": data})
        if self.reject:
            raise UserRejectionError("User rejected the request.")

        if data and data.startswith(selector(REGISTER_SESSION_KEY)):
            key, valid_after, valid_until, target, selectors, limit = decode(
                ["address", "uint48", "uint48", "address", "bytes4[]", "uint256"], _body(data)
            )
            self.chain.grants[key.lower()] = (
                key, valid_after, valid_until, target, list(selectors), limit, 0, 0
            )
        elif data and data.startswith(selector(REVOKE_SESSION_KEY)):
            (key,) = decode(["address"], _body(data))
            self.chain.grants.pop(key.lower(), None)
        else:
            if self.transfer_error is not None:
                raise self.transfer_error
            self.chain.balances[to.lower()] = self.chain.balances.get(to.lower(), 0) + value
        return f"0x{next(self._hashes):064x}"

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt:
        return Receipt(tx_hash=tx_hash, status=1)

    async def close(self) -> None:
        pass

    @property
    def registrations(self) -> list[dict[str, Any]]:
        return [
            p for p in self.prompts
            if p["data"] and p["data"].startswith(selector(REGISTER_SESSION_KEY))
        ]


class FakeStorage:
    """Records uploads and approvals instead of talking to a storage node."""

    def __init__(self) -> None:
        self.uploads: list[dict[str, Any]] = []
        self.approvals: list[tuple[str, str, int, int]] = []
        self.approval_error: Exception | None = None

    async def upload_folder(self, files, signer, paid_by=None, manifest_tags=()) -> FolderUpload:
        self.uploads.append(
            {
                "files": list(files),
                "signer": signer.address,
                "paid_by": paid_by,
                "manifest_tags": list(manifest_tags),
            }
        )
        n = len(self.uploads)
        return FolderUpload(
            manifest_id=f"manifest-{n}",
            file_ids={f.name: f"item-{n}-{i}" for i, f in enumerate(files)},
        )

    async def approve_delegate(self, owner: str, delegate: str, amount: int, expires_in: int) -> None:
        if self.approval_error is not None:
            raise self.approval_error
        self.approvals.append((owner, delegate, amount, expires_in))

    async def close(self) -> None:
        pass


@pytest.fixture
def config(tmp_path) -> DelegationConfig:
    return DelegationConfig(key_store_path=tmp_path / "storage.json", wallet_timeout_seconds=5)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def wallet(chain: FakeChain) -> FakeWallet:
    return FakeWallet(chain)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def key_store(config: DelegationConfig) -> KeyStore:
    return KeyStore(config.key_store_path)


@pytest.fixture
def runtime(config, chain, wallet, storage, key_store) -> DelegationRuntime:
    return DelegationRuntime(config, wallet, chain=chain, storage=storage, key_store=key_store)
