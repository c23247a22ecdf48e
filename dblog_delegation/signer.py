"""
Signing path of the delegated key itself.

Everything here runs without user interaction: the delegated key signs
EIP-712 ``SessionOperation`` messages for the SessionKeyManager and signs
its own transactions, which are submitted as raw transactions.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import keccak, to_checksum_address

from dblog_delegation.chain import ChainReader
from dblog_delegation.contracts import SESSION_OPERATION_TYPES, selector_bytes
from dblog_delegation.errors import classify_error
from dblog_delegation.types import DelegatedKey, DelegationConfig, Receipt

logger = logging.getLogger(__name__)


def _hex(signature: Any) -> str:
    sig_hex = signature.hex() if hasattr(signature, "hex") else str(signature)
    if not sig_hex.startswith("0x"):
        sig_hex = "0x" + sig_hex
    return sig_hex


class KeyUploadSigner:
    """Storage-upload signer backed by a delegated key."""

    def __init__(self, signer: "DelegatedSigner", key: DelegatedKey) -> None:
        self._signer = signer
        self._key = key

    @property
    def address(self) -> str:
        return self._key.address

    def sign(self, data: bytes) -> str:
        return self._signer.sign_digest(self._key, data)


class DelegatedSigner:
    """Sign and send on behalf of a :class:`DelegatedKey`."""

    def __init__(self, config: DelegationConfig, chain: ChainReader) -> None:
        self._config = config
        self._chain = chain

    def domain(self) -> dict[str, Any]:
        return {
            "name": "SessionKeyManager",
            "version": "1",
            "chainId": self._config.chain_id,
            "verifyingContract": to_checksum_address(self._config.session_key_manager_address),
        }

    def deadline(self) -> int:
        return int(time.time()) + self._config.signature_deadline_seconds

    def sign_operation(
        self,
        key: DelegatedKey,
        selector: str,
        call_data: str,
        value: int,
        nonce: int,
        deadline: int,
    ) -> bytes:
        """EIP-712 signature over one ``SessionOperation``."""
        message = {
            "owner": to_checksum_address(key.owner),
            "sessionKey": to_checksum_address(key.address),
            "target": to_checksum_address(self._config.target_contract_address),
            "selector": selector_bytes(selector),
            "callData": selector_bytes(call_data),
            "value": int(value),
            "nonce": int(nonce),
            "deadline": int(deadline),
        }
        signable = encode_typed_data(
            domain_data=self.domain(),
            message_types=SESSION_OPERATION_TYPES,
            message_data=message,
        )
        signed = Account.sign_message(signable, key.secret.reveal())
        return bytes(signed.signature)

    def sign_digest(self, key: DelegatedKey, data: bytes) -> str:
        """EIP-191 signature over ``keccak(data)``; used for storage uploads."""
        signed = Account.sign_message(encode_defunct(primitive=keccak(data)), key.secret.reveal())
        return _hex(signed.signature)

    def for_uploads(self, key: DelegatedKey) -> KeyUploadSigner:
        return KeyUploadSigner(self, key)

    async def send_transaction(
        self,
        key: DelegatedKey,
        to: str,
        value: int = 0,
        data: str | None = None,
        gas: int | None = None,
        gas_price: int | None = None,
    ) -> str:
        """Sign a legacy transaction with the delegated key and submit it."""
        try:
            if gas_price is None:
                gas_price = await self._chain.get_gas_price()
            tx: dict[str, Any] = {
                "from": to_checksum_address(key.address),
                "to": to_checksum_address(to),
                "value": int(value),
                "data": data or "0x",
            }
            if gas is None:
                gas = await self._chain.estimate_gas({**tx, "value": hex(tx["value"])})
            tx.pop("from")
            tx.update(
                {
                    "gas": int(gas),
                    "gasPrice": int(gas_price),
                    "nonce": await self._chain.get_transaction_count(key.address),
                    "chainId": self._config.chain_id,
                }
            )
            signed = Account.sign_transaction(tx, key.secret.reveal())
            tx_hash = await self._chain.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise classify_error(e)
        logger.debug("Delegated key %s sent transaction %s", key.address, tx_hash)
        return tx_hash

    async def send_and_wait(self, key: DelegatedKey, to: str, **kwargs: Any) -> Receipt:
        tx_hash = await self.send_transaction(key, to, **kwargs)
        try:
            return await self._chain.wait_for_receipt(tx_hash)
        except Exception as e:
            raise classify_error(e)
