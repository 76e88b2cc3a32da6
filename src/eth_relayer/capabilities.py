"""
Capability interfaces consumed by the adapter components.

Each component depends only on the narrow slice of node functionality it
needs, so it can be exercised against a test double. ``EthClient``
implements all node-facing protocols; the combined protocols at the bottom
are the per-component views of it.
"""

from typing import Any, Protocol, runtime_checkable

from web3.contract.async_contract import AsyncContract, AsyncContractFunction

from .models import PendingTxSnapshot


@runtime_checkable
class ReadsChainHead(Protocol):
    async def chain_id(self) -> int: ...

    async def block_number(self) -> int: ...

    async def finalized_block_number(self) -> int: ...


@runtime_checkable
class ReadsLogs(Protocol):
    async def get_logs(self, address: str, topic: bytes, from_block: int, to_block: int) -> list[dict[str, Any]]: ...


@runtime_checkable
class ReadsReceipts(Protocol):
    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]: ...


@runtime_checkable
class ReadsTransactions(Protocol):
    async def get_transaction(self, tx_hash: str) -> dict[str, Any]: ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...


@runtime_checkable
class SuggestsGasPrice(Protocol):
    async def suggest_gas_price(self) -> int: ...


@runtime_checkable
class ReadsFeeHistory(Protocol):
    async def block_number(self) -> int: ...

    async def fee_history(self, block_count: int, newest_block: int, reward_percentiles: list[float]) -> dict[str, Any]: ...


@runtime_checkable
class ReadsPendingTransactions(Protocol):
    async def pending_transactions_from(self, address: str) -> list[PendingTxSnapshot]: ...


@runtime_checkable
class ReadsContractState(Protocol):
    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract: ...

    async def call(self, function: AsyncContractFunction, block: int | str = "latest") -> Any: ...


@runtime_checkable
class EstimatesGas(Protocol):
    async def estimate_gas(self, tx: dict[str, Any]) -> int: ...


@runtime_checkable
class TracesTransactions(Protocol):
    async def debug_trace_transaction(self, tx_hash: str) -> bytes: ...


@runtime_checkable
class SubmitsTransactions(Protocol):
    async def send_raw_transaction(self, raw_tx: bytes) -> str: ...


class Signer(Protocol):
    """Signs transactions on behalf of the relayer account."""

    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...


class CounterpartyQuerier(Protocol):
    """Queries served by the relayer framework for the counterparty chain."""

    async def get_latest_finalized_height(self) -> int: ...

    async def query_unreceived_packets(self, sequences: list[int], height: int) -> list[int]: ...

    async def query_unreceived_acknowledgements(self, sequences: list[int], height: int) -> list[int]: ...


@runtime_checkable
class PacketSource(ReadsLogs, ReadsContractState, Protocol):
    """What ``PacketSyncEngine`` reads from the node."""


@runtime_checkable
class FeeSource(SuggestsGasPrice, ReadsFeeHistory, ReadsPendingTransactions, Protocol):
    """What ``FeeCalculator`` reads from the node."""


@runtime_checkable
class TxNode(
    FeeSource,
    ReadsReceipts,
    ReadsTransactions,
    ReadsContractState,
    EstimatesGas,
    TracesTransactions,
    SubmitsTransactions,
    Protocol,
):
    """What ``TxLifecycleManager`` needs from the node."""


@runtime_checkable
class ChainNode(ReadsChainHead, PacketSource, TxNode, Protocol):
    """Everything ``EthereumChain`` wires together."""
