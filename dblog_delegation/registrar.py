"""
Creating, re-registering and revoking delegated keys on-chain.

Registration is the one step that needs the user: the primary wallet sends
``registerSessionKey`` to the SessionKeyManager. The key record is persisted
only after that transaction is confirmed.
"""

from __future__ import annotations

import logging

from dblog_delegation.chain import ChainReader
from dblog_delegation.contracts import (
    operation_selector,
    register_session_key_call,
    revoke_session_key_call,
)
from dblog_delegation.errors import DelegationError, OwnershipError, classify_error
from dblog_delegation.keystore import KeyStore
from dblog_delegation.secret import SecretKey
from dblog_delegation.storage import ContentStorage
from dblog_delegation.types import DelegatedKey, DelegationConfig
from dblog_delegation.wallet import WalletProvider, current_wallet_address, wallet_prompt

logger = logging.getLogger(__name__)


class CapabilityRegistrar:
    """Binds delegated keys to the target contract through the primary wallet."""

    def __init__(
        self,
        config: DelegationConfig,
        chain: ChainReader,
        wallet: WalletProvider,
        store: KeyStore,
        storage: ContentStorage | None = None,
    ) -> None:
        self._config = config
        self._chain = chain
        self._wallet = wallet
        self._store = store
        self._storage = storage

    @property
    def allowed_selectors(self) -> list[str]:
        return [operation_selector(op) for op in self._config.allowed_operations]

    async def create_delegated_key(self, owner: str | None = None) -> DelegatedKey:
        """Generate, register and persist a brand-new delegated key.

        Args:
            owner: Expected primary wallet. Defaults to the connected one.

        Raises:
            OwnershipError: ``owner`` is not the connected wallet.
            UserRejectionError: The user declined the registration.
            KeyGenerationError: The entropy source failed.
        """
        current = await self._require_owner(owner)
        secret = SecretKey.generate()
        address = secret.address

        valid_until = await self._register(address)
        key = DelegatedKey(address=address, secret=secret, owner=current, valid_until=valid_until)
        self._store.save(key)
        logger.info("Created delegated key %s for %s (valid until %d)", address, current, valid_until)

        await self._approve_storage(key)
        return key

    async def reauthorize(self, existing: DelegatedKey) -> DelegatedKey:
        """Re-register an existing key with a fresh window, keeping its address.

        Used when a key that still holds funds has expired or lost its grant.
        """
        await self._require_owner(existing.owner)

        valid_until = await self._register(existing.address)
        key = existing.model_copy(update={"valid_until": valid_until})
        self._store.save(key)
        logger.info("Reauthorized delegated key %s (valid until %d)", key.address, valid_until)

        await self._approve_storage(key)
        return key

    async def revoke(self, key: DelegatedKey) -> str:
        """Revoke ``key`` on-chain, then forget it locally."""
        await self._require_owner(key.owner)
        tx_hash = await self._send(
            revoke_session_key_call(key.address), "revokeSessionKey"
        )
        stored = self._store.load()
        if stored is not None and stored.address == key.address:
            self._store.clear()
        logger.info("Revoked delegated key %s. Tx: %s", key.address, tx_hash)
        return tx_hash

    # ---- Internal ----

    async def _require_owner(self, owner: str | None) -> str:
        current = await current_wallet_address(self._wallet, self._config.wallet_timeout_seconds)
        if owner is not None and owner.lower() != current.lower():
            raise OwnershipError(
                f"Delegated key belongs to {owner}, but the connected wallet is {current}"
            )
        return current

    async def _register(self, address: str) -> int:
        # Chain time, not the local clock, anchors the window
        valid_after = await self._chain.get_block_timestamp()
        valid_until = valid_after + self._config.key_duration_seconds
        data = register_session_key_call(
            address,
            valid_after,
            valid_until,
            self._config.target_contract_address,
            self.allowed_selectors,
            self._config.spending_limit,
        )
        await self._send(data, "registerSessionKey")
        return valid_until

    async def _send(self, data: str, label: str) -> str:
        tx_hash = await wallet_prompt(
            self._wallet.request_transaction(self._config.session_key_manager_address, 0, data),
            self._config.wallet_timeout_seconds,
        )
        try:
            await self._wallet.wait_for_confirmation(tx_hash)
        except Exception as e:
            raise classify_error(e)
        logger.debug("%s confirmed: %s", label, tx_hash)
        return tx_hash

    async def _approve_storage(self, key: DelegatedKey) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.approve_delegate(
                key.owner,
                key.address,
                self._config.storage_approval_amount,
                self._config.key_duration_seconds,
            )
            logger.info("Storage balance approval created for %s", key.address)
        except DelegationError as e:
            # The key still works when funded directly
            logger.warning("Failed to create storage balance approval for %s: %s", key.address, e)
