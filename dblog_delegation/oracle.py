"""
Is a stored delegated key usable right now?

Local checks (ownership, expiry) are cheap and optimistic; the on-chain check
reads the authoritative capability grant and fails closed.
"""

from __future__ import annotations

import logging
import time

from dblog_delegation.chain import ChainReader
from dblog_delegation.contracts import (
    GET_SESSION_KEY_DATA,
    SESSION_KEY_DATA_OUTPUT,
    operation_selector,
    session_key_data,
)
from dblog_delegation.errors import AuthorizationError
from dblog_delegation.types import CapabilityGrant, DelegatedKey, DelegationConfig
from dblog_delegation.wallet import WalletProvider

logger = logging.getLogger(__name__)


class ValidityOracle:
    """Local and on-chain validity checks for a :class:`DelegatedKey`."""

    def __init__(
        self,
        config: DelegationConfig,
        chain: ChainReader,
        wallet: WalletProvider,
    ) -> None:
        self._config = config
        self._chain = chain
        self._wallet = wallet

    async def is_owned_by_current_wallet(self, key: DelegatedKey) -> bool:
        try:
            current = await self._wallet.get_current_address()
        except Exception:
            return False
        return key.belongs_to(current)

    def is_locally_expired(self, key: DelegatedKey, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > key.valid_until

    async def read_grant(self, key: DelegatedKey) -> CapabilityGrant:
        (record,) = await self._chain.read_contract(
            self._config.session_key_manager_address,
            GET_SESSION_KEY_DATA,
            [key.owner, key.address],
            [SESSION_KEY_DATA_OUTPUT],
        )
        return CapabilityGrant(**session_key_data(record))

    async def assert_active(
        self,
        key: DelegatedKey,
        required_operation: str | None = None,
        value: int = 0,
    ) -> CapabilityGrant:
        """Raise :class:`AuthorizationError` naming the first failed check.

        Returns the grant when every check passes.
        """
        grant = await self.read_grant(key)
        now = await self._chain.get_block_timestamp()
        target = self._config.target_contract_address

        if not grant.is_registered:
            raise AuthorizationError(
                "Session key is not registered on-chain. "
                "Please create a new session key and wait for confirmation."
            )
        if grant.allowed_target.lower() != target.lower():
            raise AuthorizationError(
                "Session key is registered for a different contract. "
                f"expected={target}, got={grant.allowed_target}"
            )
        if required_operation is not None:
            selector = operation_selector(required_operation)
            if not grant.allows(selector):
                raise AuthorizationError(
                    f"Session key is not authorized for this operation (selector={selector})."
                )
        if now < grant.valid_after:
            raise AuthorizationError(
                f"Session key is not active yet (validAfter={grant.valid_after}, now={now})."
            )
        if now > grant.valid_until:
            raise AuthorizationError("Session key has expired.")
        if grant.spent_amount + value > grant.spending_limit:
            raise AuthorizationError("Session key spending limit exceeded.")
        return grant

    async def is_valid_on_chain(
        self,
        key: DelegatedKey,
        required_operation: str | None = None,
        value: int = 0,
    ) -> bool:
        """Boolean form of :meth:`assert_active`. Any read error means invalid."""
        try:
            await self.assert_active(key, required_operation, value)
            return True
        except AuthorizationError as e:
            logger.info("Delegated key %s invalid on-chain: %s", key.address, e)
            return False
        except Exception as e:
            logger.warning("Could not verify delegated key %s on-chain: %s", key.address, e)
            return False
