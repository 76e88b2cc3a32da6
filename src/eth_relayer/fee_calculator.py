"""
Gas pricing for transactions sent by the relayer.

Supports legacy (gas price) and EIP-1559 (tip cap / fee cap) pricing. When a
price bump is configured and the transaction reuses the nonce of a pending
one, the computed fees never fall below what the node requires to accept a
replacement.
"""

import logging
from dataclasses import dataclass
from typing import Any

from .capabilities import FeeSource
from .config import ChainConfig
from .errors import ConfigurationError, NotFoundError, StalePricingError
from .models import GasPricing, PendingTxSnapshot, to_int

logger = logging.getLogger(__name__)


def bump_by_percent(value: int, percent: int) -> int:
    """Return ``value`` increased by ``percent`` percent, rounded down."""
    return value * (100 + percent) // 100


@dataclass(frozen=True, slots=True)
class ReplacementFloor:
    """Minimum fees a replacement for ``pending`` must pay (zero if none)."""
    pending: PendingTxSnapshot | None = None
    gas_fee_cap: int = 0
    gas_tip_cap: int = 0
    gas_price: int = 0


class FeeCalculator:
    """Computes fee fields for the configured transaction type."""

    def __init__(self, client: FeeSource, config: ChainConfig, address: str):
        """
        Initialize the calculator.

        Args:
            client: Node client for gas price, fee history and txpool reads
            config: Chain configuration
            address: Sender account whose pending transactions set the floor
        """
        self.client = client
        self.config = config
        self.address = address

    async def minimum_required_fee(self, nonce: int | None) -> ReplacementFloor:
        """
        Find the pending tx at ``nonce`` and the bumped fees a replacement needs.

        Returns all-zero floors when no price bump is configured, no nonce is
        given, or the sender has nothing pending at that nonce.
        """
        if self.config.price_bump is None or nonce is None:
            return ReplacementFloor()

        pending = await self.client.pending_transactions_from(self.address)
        tx = next((tx for tx in pending if tx.nonce == nonce), None)
        if tx is None:
            return ReplacementFloor()

        bump = self.config.price_bump
        return ReplacementFloor(
            pending=tx,
            gas_fee_cap=bump_by_percent(tx.fee_cap, bump),
            gas_tip_cap=bump_by_percent(tx.tip_cap, bump),
            gas_price=bump_by_percent(tx.gas_price, bump),
        )

    async def sample_fee_history(self) -> tuple[int, int]:
        """
        Sample ``(reward, base_fee)`` from fee history.

        Walks back from the latest block up to ``max_retry_for_fee_history``
        blocks until a block with a non-zero reward is found.

        Raises:
            NotFoundError: If no usable sample was found
        """
        dyn = self.config.dynamic_tx_gas_config
        latest = await self.client.block_number()

        for i in range(dyn.max_retry_for_fee_history + 1):
            newest = latest - i
            if newest < 0:
                break
            history = await self.client.fee_history(1, newest, [dyn.fee_history_reward_percentile])
            if sample := _fee_sample(history):
                return sample
            logger.debug(f"No usable fee sample at block {newest}")

        raise NotFoundError(
            f"no fee was found: latest={latest}, maxRetry={dyn.max_retry_for_fee_history}"
        )

    async def compute(self, nonce: int | None = None) -> GasPricing | None:
        """
        Compute fee fields for the next transaction.

        Args:
            nonce: Nonce the transaction will use; enables the replacement floor

        Returns:
            The pricing, or None when the node should fill fees itself

        Raises:
            StalePricingError: If the pending tx at ``nonce`` already pays more
            ConfigurationError: If the clamped fee cap falls below the tip cap
        """
        match self.config.tx_type:
            case "auto":
                return None
            case "legacy":
                return await self._compute_legacy(nonce)
            case "dynamic":
                return await self._compute_dynamic(nonce)
            case other:
                raise ConfigurationError(f"unsupported tx type: {other}")

    async def _compute_legacy(self, nonce: int | None) -> GasPricing:
        suggested = await self.client.suggest_gas_price()
        floor = await self.minimum_required_fee(nonce)

        if floor.pending is not None and floor.pending.gas_price > suggested:
            raise StalePricingError("gasPrice", floor.pending.gas_price, suggested)

        return GasPricing(gas_price=max(suggested, floor.gas_price))

    async def _compute_dynamic(self, nonce: int | None) -> GasPricing:
        dyn = self.config.dynamic_tx_gas_config
        reward, base_fee = await self.sample_fee_history()

        tip = dyn.priority_fee_rate.mul(reward)
        fee = tip + dyn.base_fee_rate.mul(base_fee)

        floor = await self.minimum_required_fee(nonce)
        if (pending := floor.pending) is not None and pending.tip_cap > tip and pending.fee_cap > fee:
            raise StalePricingError(
                "gasFeeCap", pending.fee_cap, fee, existing_tip=pending.tip_cap, suggested_tip=tip
            )

        tip = _clamp(tip, floor.gas_tip_cap, dyn.limit_priority_fee)
        fee = _clamp(fee, floor.gas_fee_cap, dyn.limit_fee)

        if fee < tip:
            raise ConfigurationError(f"invalid fee configuration: gasFeeCap({fee}) < gasTipCap({tip})")

        return GasPricing(gas_tip_cap=tip, gas_fee_cap=fee)

    async def apply(self, tx_params: dict[str, Any], nonce: int | None = None) -> dict[str, Any]:
        """Return a copy of ``tx_params`` with the computed fee fields set."""
        params = dict(tx_params)
        if (pricing := await self.compute(nonce)) is not None:
            params.update(pricing.to_tx_params())
        return params


def _clamp(value: int, floor: int, limit: int) -> int:
    value = max(value, floor)
    if limit > 0:
        value = min(value, limit)
    return value


def _fee_sample(history: dict[str, Any]) -> tuple[int, int] | None:
    rewards = history.get("reward") or []
    base_fees = history.get("baseFeePerGas") or []
    if not rewards or not rewards[0] or not base_fees:
        return None
    reward = to_int(rewards[0][0])
    if reward == 0:
        return None
    return reward, to_int(base_fees[0])
