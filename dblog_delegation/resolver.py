"""
Capability resolver: hand out a ready-to-use delegated key.

The stored key moves through an explicit state machine. ``classify_local``
and ``plan`` are pure so the fund-preserving branch can be tested on its own:
a key in ``LOCAL_EXPIRED`` or ``CHAIN_INVALID`` is only purged once its
balance has been read and found to be zero; otherwise it is reauthorized.

Known, accepted race: a transfer still in flight when the balance is read as
zero is not waited for, and the key is purged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from dblog_delegation.errors import (
    DelegationError,
    FundingError,
    KeyRecoveryError,
    UserRejectionError,
)
from dblog_delegation.funding import FundingController
from dblog_delegation.keystore import KeyStore
from dblog_delegation.oracle import ValidityOracle
from dblog_delegation.registrar import CapabilityRegistrar
from dblog_delegation.types import DelegatedKey, DelegationConfig
from dblog_delegation.wallet import WalletProvider, current_wallet_address

logger = logging.getLogger(__name__)


class KeyState(Enum):
    ABSENT = "absent"
    FOREIGN = "foreign"
    LOCAL_VALID = "local-valid"
    LOCAL_EXPIRED = "local-expired"
    CHAIN_INVALID = "chain-invalid"
    CHAIN_VALID = "chain-valid"


class Action(Enum):
    CREATE = "create"
    GIVE_UP = "give-up"
    PURGE = "purge"
    VERIFY_ON_CHAIN = "verify-on-chain"
    CHECK_BALANCE = "check-balance"
    REAUTHORIZE = "reauthorize"
    USE = "use"


def classify_local(key: DelegatedKey | None, current_wallet: str | None, now: float) -> KeyState:
    """State of the stored key before any chain read."""
    if key is None:
        return KeyState.ABSENT
    if not key.belongs_to(current_wallet):
        return KeyState.FOREIGN
    if now > key.valid_until:
        return KeyState.LOCAL_EXPIRED
    return KeyState.LOCAL_VALID


def classify_chain(valid: bool) -> KeyState:
    return KeyState.CHAIN_VALID if valid else KeyState.CHAIN_INVALID


def plan(state: KeyState, *, auto_create: bool, balance: int | None = None) -> Action:
    """Next step for ``state``.

    ``balance`` is the key's balance once read; ``None`` means not read yet.
    """
    if state is KeyState.ABSENT:
        return Action.CREATE if auto_create else Action.GIVE_UP
    if state is KeyState.FOREIGN:
        return Action.PURGE
    if state is KeyState.LOCAL_VALID:
        return Action.VERIFY_ON_CHAIN
    if state is KeyState.CHAIN_VALID:
        return Action.USE
    # LOCAL_EXPIRED / CHAIN_INVALID: never discard before looking at the balance
    if balance is None:
        return Action.CHECK_BALANCE
    return Action.REAUTHORIZE if balance > 0 else Action.PURGE


class CapabilityResolver:
    """Drives the key store, oracle, registrar and funding controller."""

    def __init__(
        self,
        config: DelegationConfig,
        wallet: WalletProvider,
        store: KeyStore,
        oracle: ValidityOracle,
        registrar: CapabilityRegistrar,
        funding: FundingController,
    ) -> None:
        self._config = config
        self._wallet = wallet
        self._store = store
        self._oracle = oracle
        self._registrar = registrar
        self._funding = funding
        # Serialises the read-modify-write of the one stored record
        self._lock = asyncio.Lock()

    async def resolve(
        self,
        required_operation: str | None = None,
        auto_create: bool = True,
    ) -> DelegatedKey | None:
        """Return a registered, on-chain valid key, creating one if allowed.

        At most one wallet prompt: a registration or a reauthorization.

        Raises:
            AuthorizationError: No wallet is connected.
            KeyRecoveryError: A funded key could not be reauthorized; it is
                kept in the store.
            UserRejectionError: The user declined the prompt.
        """
        async with self._lock:
            return await self._resolve(required_operation, auto_create)

    async def ensure_ready(self, required_operation: str | None = None) -> DelegatedKey | None:
        """:meth:`resolve`, then make sure the key can pay for gas.

        Returns ``None`` instead of raising when the user declines a prompt or
        funding fails.
        """
        try:
            key = await self.resolve(required_operation)
        except UserRejectionError as e:
            logger.info("Delegated key not ready: %s", e)
            return None
        if key is None:
            return None
        if not await self._funding.ensure_funded(key.address):
            logger.info("Delegated key %s could not be funded", key.address)
            return None
        return key

    async def force_recreate(self, previous: DelegatedKey | None = None) -> DelegatedKey:
        """Register a brand-new key, bypassing reuse of the stored one.

        Funds held by ``previous`` are swept back to its owner first, so
        replacing the stored record never strands them.
        """
        async with self._lock:
            if previous is not None:
                await self._sweep(previous)
            return await self._registrar.create_delegated_key(
                previous.owner if previous is not None else None
            )

    def stored_key(self) -> DelegatedKey | None:
        return self._store.load()

    # ---- Internal ----

    async def _resolve(self, required_operation: str | None, auto_create: bool) -> DelegatedKey | None:
        key = self._store.load()
        if key is None and not auto_create:
            return None

        current = await current_wallet_address(self._wallet, self._config.wallet_timeout_seconds)
        state = classify_local(key, current, time.time())
        balance: int | None = None

        while True:
            action = plan(state, auto_create=auto_create, balance=balance)
            logger.debug("Delegated key state %s -> %s", state.value, action.value)

            if action is Action.USE:
                return key
            if action is Action.GIVE_UP:
                return None
            if action is Action.CREATE:
                return await self._registrar.create_delegated_key(current)

            if key is None:
                # Only ABSENT plans without a key, and it ends in CREATE or GIVE_UP
                state, balance = KeyState.ABSENT, None
                continue
            if action is Action.PURGE:
                self._purge(key, state)
                key, state, balance = None, KeyState.ABSENT, None
            elif action is Action.VERIFY_ON_CHAIN:
                valid = await self._oracle.is_valid_on_chain(key, required_operation)
                state = classify_chain(valid)
            elif action is Action.CHECK_BALANCE:
                balance = await self._funding.balance_of(key.address)
            elif action is Action.REAUTHORIZE:
                return await self._reauthorize(key, balance or 0)

    async def _reauthorize(self, key: DelegatedKey, balance: int) -> DelegatedKey:
        logger.info(
            "Delegated key %s holds %d wei; reauthorizing instead of discarding",
            key.address, balance,
        )
        try:
            return await self._registrar.reauthorize(key)
        except UserRejectionError:
            raise
        except DelegationError as e:
            raise KeyRecoveryError(
                f"Could not reauthorize funded delegated key {key.address}: {e}",
                key.address,
            ) from e

    def _purge(self, key: DelegatedKey, state: KeyState) -> None:
        if state is KeyState.FOREIGN:
            logger.info("Stored delegated key %s belongs to %s; clearing", key.address, key.owner)
        else:
            logger.info("Discarding unfunded delegated key %s (%s)", key.address, state.value)
        self._store.clear()

    async def _sweep(self, key: DelegatedKey) -> None:
        try:
            await self._funding.withdraw_all(key)
        except FundingError as e:
            logger.debug("Nothing to sweep from %s: %s", key.address, e)
        except DelegationError as e:
            raise KeyRecoveryError(
                f"Could not withdraw funds from delegated key {key.address} before replacing it: {e}",
                key.address,
            ) from e
