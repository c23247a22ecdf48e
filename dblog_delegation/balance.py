"""Gas-price based funding thresholds for a delegated key."""

from __future__ import annotations

from dblog_delegation.chain import ChainReader
from dblog_delegation.types import BalanceEstimate, DelegationConfig


class BalanceEstimator:
    """``gas_price * estimated_gas_units * multiplier``.

    Each public call reads the gas price once; use :meth:`estimate` when both
    thresholds are needed.
    """

    def __init__(self, config: DelegationConfig, chain: ChainReader) -> None:
        self._config = config
        self._chain = chain

    @property
    def min_multiplier(self) -> int:
        return self._config.funding.min_multiplier

    @property
    def default_multiplier(self) -> int:
        return max(self._config.funding.default_multiplier, self.min_multiplier)

    def thresholds(self, gas_price: int) -> BalanceEstimate:
        unit = gas_price * self._config.estimated_gas_units
        return BalanceEstimate(
            gas_price=gas_price,
            minimum=unit * self.min_multiplier,
            target=unit * self.default_multiplier,
        )

    async def estimate(self) -> BalanceEstimate:
        return self.thresholds(await self._chain.get_gas_price())

    async def minimum_balance(self) -> int:
        return (await self.estimate()).minimum

    async def target_balance(self) -> int:
        return (await self.estimate()).target
