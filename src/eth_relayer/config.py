"""
Configuration module for the Ethereum relay adapter.

This module provides type-safe configuration dataclasses with validation.
A chain is configured from a JSON file, with the RPC endpoint and the
signing key optionally overridden from environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .models import GasFeeBounds
from .utils.denom import parse_ether_amount

logger = logging.getLogger(__name__)

TX_TYPE_AUTO = "auto"
TX_TYPE_LEGACY = "legacy"
TX_TYPE_DYNAMIC = "dynamic"


@dataclass(frozen=True, slots=True)
class Fraction:
    """A rational multiplier applied with integer floor division."""
    numerator: int = 1
    denominator: int = 1

    def __post_init__(self) -> None:
        if self.denominator == 0:
            raise ValueError("zero is invalid fraction denominator")
        if self.numerator < 0 or self.denominator < 0:
            raise ValueError(f"fraction must be non-negative, got {self.numerator}/{self.denominator}")

    def mul(self, n: int) -> int:
        return n * self.numerator // self.denominator


@dataclass(frozen=True, slots=True)
class DynamicTxGasConfig:
    """EIP-1559 fee settings.

    Attributes:
        limit_priority_fee_per_gas: Ceiling for the tip cap ("" = no limit)
        limit_fee_per_gas: Ceiling for the fee cap ("" = no limit)
        priority_fee_rate: Multiplier applied to the sampled reward
        base_fee_rate: Multiplier applied to the sampled base fee
        fee_history_reward_percentile: Percentile passed to eth_feeHistory
        max_retry_for_fee_history: Older blocks to try when a sample has no reward
    """
    limit_priority_fee_per_gas: str = ""
    limit_fee_per_gas: str = ""
    priority_fee_rate: Fraction = field(default_factory=Fraction)
    base_fee_rate: Fraction = field(default_factory=lambda: Fraction(2, 1))
    fee_history_reward_percentile: int = 50
    max_retry_for_fee_history: int = 1

    def __post_init__(self) -> None:
        """Validate dynamic fee configuration."""
        for name in ("limit_priority_fee_per_gas", "limit_fee_per_gas"):
            if value := getattr(self, name):
                try:
                    parse_ether_amount(value)
                except ValueError as e:
                    raise ValueError(f"config attribute \"{name}\" is invalid: {e}") from None
        if not 0 < self.fee_history_reward_percentile <= 100:
            raise ValueError(
                f"config attribute \"fee_history_reward_percentile\" must be in (0, 100], "
                f"got {self.fee_history_reward_percentile}"
            )
        if self.max_retry_for_fee_history <= 0:
            raise ValueError("config attribute \"max_retry_for_fee_history\" is zero")

    @property
    def limit_priority_fee(self) -> int:
        return parse_ether_amount(self.limit_priority_fee_per_gas) if self.limit_priority_fee_per_gas else 0

    @property
    def limit_fee(self) -> int:
        return parse_ether_amount(self.limit_fee_per_gas) if self.limit_fee_per_gas else 0


@dataclass(frozen=True, slots=True)
class ReplaceTxConfig:
    """Settings for replacing a transaction that stays pending too long.

    Attributes:
        check_interval: Seconds between pending-status checks
        pending_duration_to_replace: Seconds a tx may stay pending before replacement
        gas_price_inc .. max_gas_fee_cap: Ether amounts ("3gwei") per fee field
    """
    check_interval: int = 5
    pending_duration_to_replace: int = 60
    gas_price_inc: str = "1gwei"
    max_gas_price: str = "100gwei"
    gas_tip_cap_inc: str = "1gwei"
    max_gas_tip_cap: str = "10gwei"
    gas_fee_cap_inc: str = "1gwei"
    max_gas_fee_cap: str = "100gwei"

    AMOUNT_FIELDS: ClassVar[tuple[str, ...]] = (
        "gas_price_inc", "max_gas_price",
        "gas_tip_cap_inc", "max_gas_tip_cap",
        "gas_fee_cap_inc", "max_gas_fee_cap",
    )

    def __post_init__(self) -> None:
        """Validate replacement configuration."""
        if self.check_interval <= 0:
            raise ValueError(f"Check interval must be positive, got {self.check_interval}")
        if self.pending_duration_to_replace < 0:
            raise ValueError(
                f"Pending duration must be non-negative, got {self.pending_duration_to_replace}"
            )
        for name in self.AMOUNT_FIELDS:
            try:
                parse_ether_amount(getattr(self, name))
            except ValueError as e:
                raise ValueError(f"config attribute \"{name}\" is invalid: {e}") from None

    def gas_fee_bounds(self) -> GasFeeBounds:
        return GasFeeBounds(**{name: parse_ether_amount(getattr(self, name)) for name in self.AMOUNT_FIELDS})


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Main configuration for one Ethereum chain served by the adapter."""

    chain_id: str
    eth_chain_id: int
    rpc_addr: str
    ibc_address: str
    port_id: str
    channel_id: str
    home_path: str = "~/.eth-relayer"
    tx_type: str = TX_TYPE_DYNAMIC
    blocks_per_event_query: int = 1000
    max_retry_for_inclusion: int = 10
    average_block_time_msec: int = 1000
    price_bump: int | None = None
    gas_estimate_rate: Fraction = field(default_factory=Fraction)
    max_gas_limit: int = 10_000_000
    enable_debug_trace: bool = False
    abi_paths: tuple[str, ...] = ()
    initial_send_checkpoint: int = 1
    initial_recv_checkpoint: int = 1
    dynamic_tx_gas_config: DynamicTxGasConfig | None = field(default_factory=DynamicTxGasConfig)
    replace_tx_config: ReplaceTxConfig | None = None
    multicall3_address: str = ""
    private_key: str = field(default="", repr=False)

    SUPPORTED_TX_TYPES: ClassVar[set[str]] = {TX_TYPE_AUTO, TX_TYPE_LEGACY, TX_TYPE_DYNAMIC}

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        for name in ("chain_id", "rpc_addr", "ibc_address", "port_id", "channel_id"):
            if not str(getattr(self, name)).strip():
                raise ValueError(f"config attribute \"{name}\" is empty")

        parsed = urlparse(self.rpc_addr)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. Expected http or https"
            )

        if not Web3.is_address(self.ibc_address):
            raise ValueError(f"Invalid IBC handler address: {self.ibc_address}")
        checksummed = Web3.to_checksum_address(self.ibc_address)
        if checksummed != self.ibc_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'ibc_address', checksummed)

        if self.multicall3_address:
            if not Web3.is_address(self.multicall3_address):
                raise ValueError(f"Invalid multicall3 address: {self.multicall3_address}")
            object.__setattr__(self, "multicall3_address", Web3.to_checksum_address(self.multicall3_address))

        if self.tx_type not in self.SUPPORTED_TX_TYPES:
            raise ValueError(
                f"Unsupported tx_type: {self.tx_type}. "
                f"Supported: {', '.join(sorted(self.SUPPORTED_TX_TYPES))}"
            )
        if self.tx_type == TX_TYPE_DYNAMIC and self.dynamic_tx_gas_config is None:
            raise ValueError("config attribute \"dynamic_tx_gas_config\" is empty")

        if self.blocks_per_event_query <= 0:
            raise ValueError(f"Blocks per event query must be positive, got {self.blocks_per_event_query}")
        if self.max_retry_for_inclusion <= 0:
            raise ValueError("config attribute \"max_retry_for_inclusion\" is zero")
        if self.average_block_time_msec <= 0:
            raise ValueError("config attribute \"average_block_time_msec\" is zero")
        if self.max_gas_limit <= 0:
            raise ValueError("config attribute \"max_gas_limit\" is zero")
        if self.gas_estimate_rate.numerator == 0:
            raise ValueError("config attribute \"gas_estimate_rate.numerator\" is zero")
        if self.price_bump is not None and self.price_bump < 0:
            raise ValueError(f"Price bump must be non-negative, got {self.price_bump}")
        for i, path in enumerate(self.abi_paths):
            if not path.strip():
                raise ValueError(f"config attribute \"abi_paths[{i}]\" is empty")
        if self.initial_send_checkpoint < 0 or self.initial_recv_checkpoint < 0:
            raise ValueError("Initial checkpoints must be non-negative")

    @property
    def data_dir(self) -> Path:
        """Per-chain directory holding persisted checkpoints."""
        return Path(self.home_path).expanduser() / "ethereum" / self.chain_id

    @property
    def receipt_poll_delay(self) -> float:
        return self.average_block_time_msec / 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainConfig":
        """
        Build a configuration from a decoded JSON chain config.

        Raises:
            ValueError: If an attribute is unknown or invalid
        """
        known = {f.name for f in fields(cls)}
        if unknown := set(data) - known:
            raise ValueError(f"Unknown config attributes: {', '.join(sorted(unknown))}")

        values = dict(data)
        if "gas_estimate_rate" in values:
            values["gas_estimate_rate"] = Fraction(**values["gas_estimate_rate"])
        if (dyn := values.get("dynamic_tx_gas_config")) is not None:
            dyn = dict(dyn)
            for key in ("priority_fee_rate", "base_fee_rate"):
                if key in dyn:
                    dyn[key] = Fraction(**dyn[key])
            values["dynamic_tx_gas_config"] = DynamicTxGasConfig(**dyn)
        if (replace := values.get("replace_tx_config")) is not None:
            values["replace_tx_config"] = ReplaceTxConfig(**replace)
        if "abi_paths" in values:
            values["abi_paths"] = tuple(values["abi_paths"])
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> "ChainConfig":
        """
        Load configuration from a JSON file, applying environment overrides.

        ``RPC_ADDR`` replaces the configured endpoint and ``PRIVATE_KEY``
        supplies the signing key, which is never read from the file.

        Raises:
            ValueError: If the file content is invalid
        """
        with Path(path).open() as file:
            data = json.load(file)

        if rpc_addr := os.environ.get("RPC_ADDR"):
            data["rpc_addr"] = rpc_addr
        data.pop("private_key", None)
        if private_key := os.environ.get("PRIVATE_KEY"):
            data["private_key"] = private_key
        return cls.from_dict(data)

    def log_config(self) -> None:
        """Log configuration settings (hiding sensitive data)."""
        logger.info("=" * 60)
        logger.info(f"Ethereum Chain Configuration [{self.chain_id}]")
        logger.info("=" * 60)
        logger.info(f"  RPC URL: {self.rpc_addr}")
        logger.info(f"  EVM Chain ID: {self.eth_chain_id}")
        logger.info(f"  IBC Handler: {self.ibc_address}")
        logger.info(f"  Path: {self.port_id}/{self.channel_id}")
        logger.info(f"  Tx Type: {self.tx_type}")
        logger.info(f"  Blocks Per Event Query: {self.blocks_per_event_query}")
        logger.info(f"  Receipt Retry: {self.max_retry_for_inclusion} x {self.average_block_time_msec}ms")
        logger.info(f"  Price Bump: {self.price_bump if self.price_bump is not None else '[NOT SET]'}")
        logger.info(f"  Replace Tx: {'[SET]' if self.replace_tx_config else '[NOT SET]'}")
        logger.info(f"  Multicall3: {self.multicall3_address or '[NOT SET]'}")
        logger.info(f"  ABI Paths: {', '.join(self.abi_paths) or '[NONE]'}")
        logger.info(f"  Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        logger.info("=" * 60)
