"""
Keeping a delegated key funded, and getting the funds back out.

Top-ups come from the primary wallet (one prompt); withdrawals are signed by
the delegated key itself and need no prompt.
"""

from __future__ import annotations

import logging

from eth_utils import from_wei

from dblog_delegation.balance import BalanceEstimator
from dblog_delegation.chain import ChainReader
from dblog_delegation.errors import (
    DelegationError,
    FundingError,
    UserRejectionError,
    classify_error,
)
from dblog_delegation.signer import DelegatedSigner
from dblog_delegation.types import DelegatedKey, DelegationConfig
from dblog_delegation.wallet import WalletProvider, wallet_prompt

logger = logging.getLogger(__name__)


def _eth(amount: int) -> str:
    return f"{from_wei(amount, 'ether')} ETH"


class FundingController:
    """Balance reads, top-ups and withdrawals for delegated keys."""

    def __init__(
        self,
        config: DelegationConfig,
        chain: ChainReader,
        wallet: WalletProvider,
        estimator: BalanceEstimator,
        signer: DelegatedSigner,
    ) -> None:
        self._config = config
        self._chain = chain
        self._wallet = wallet
        self._estimator = estimator
        self._signer = signer

    async def balance_of(self, address: str) -> int:
        return await self._chain.get_balance(address)

    async def has_sufficient_balance(self, address: str) -> bool:
        balance = await self.balance_of(address)
        return balance >= await self._estimator.minimum_balance()

    async def fund(self, address: str, amount: int | None = None) -> str:
        """Send ``amount`` (default: target balance) from the primary wallet.

        The amount is raised to the minimum balance if it falls below it.
        Blocks until the transfer is confirmed.

        Raises:
            UserRejectionError: The user declined the transfer.
            FundingError: The transfer failed or reverted.
        """
        estimate = await self._estimator.estimate()
        fund_amount = estimate.target if amount is None else amount
        actual = max(fund_amount, estimate.minimum)

        logger.info(
            "Funding delegated key %s with %s (min: %s)",
            address, _eth(actual), _eth(estimate.minimum),
        )
        tx_hash = await wallet_prompt(
            self._wallet.request_transaction(address, actual),
            self._config.wallet_timeout_seconds,
        )
        try:
            await self._wallet.wait_for_confirmation(tx_hash)
        except Exception as e:
            err = classify_error(e)
            raise FundingError(f"Funding transfer {tx_hash} failed: {err}") from err
        logger.info("Funded delegated key %s with %s. Tx: %s", address, _eth(actual), tx_hash)
        return tx_hash

    async def require_funded(self, address: str, extra: int = 0) -> None:
        """Top the key up if it is below the minimum balance plus ``extra``.

        ``extra`` is value the key is about to attach to a call (a tip or a
        collect price).

        Raises:
            UserRejectionError: The user declined the transfer.
            FundingError: The transfer failed.
        """
        balance = await self.balance_of(address)
        estimate = await self._estimator.estimate()
        required = estimate.minimum + extra

        if balance >= required:
            logger.debug(
                "Delegated key balance sufficient: %s (min: %s)",
                _eth(balance), _eth(required),
            )
            return

        logger.info(
            "Delegated key balance low (%s), need at least %s, funding...",
            _eth(balance), _eth(required),
        )
        try:
            await self.fund(address, max(estimate.target, required))
        except (UserRejectionError, FundingError):
            raise
        except DelegationError as e:
            raise FundingError(f"Failed to fund delegated key {address}: {e}") from e

    async def ensure_funded(self, address: str, extra: int = 0) -> bool:
        """Boolean form of :meth:`require_funded`.

        A declined or failed transfer is logged and returns ``False``; the
        caller decides whether to abort. Balance-read failures propagate.
        """
        try:
            await self.require_funded(address, extra)
            return True
        except DelegationError as e:
            logger.warning("Failed to fund delegated key %s: %s", address, e)
            return False

    async def withdrawal_fee(self) -> tuple[int, int]:
        """``(gas_price, fee)`` of one plain transfer."""
        gas_price = await self._chain.get_gas_price()
        return gas_price, gas_price * self._config.transfer_gas_units

    async def withdraw_all(self, key: DelegatedKey) -> str:
        """Send everything except the transfer fee back to ``key.owner``.

        Signed by the delegated key itself; no wallet prompt.

        Raises:
            FundingError: The balance does not cover the transfer fee.
        """
        balance = await self.balance_of(key.address)
        gas_price, fee = await self.withdrawal_fee()
        amount = balance - fee
        if amount <= 0:
            raise FundingError(
                f"Balance too low to cover fees: balance {_eth(balance)}, fee {_eth(fee)}"
            )

        receipt = await self._signer.send_and_wait(
            key,
            key.owner,
            value=amount,
            gas=self._config.transfer_gas_units,
            gas_price=gas_price,
        )
        logger.info(
            "Withdrew %s from delegated key %s to %s. Tx: %s",
            _eth(amount), key.address, key.owner, receipt.tx_hash,
        )
        return receipt.tx_hash
