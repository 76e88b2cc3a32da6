"""
Async JSON-RPC client for an Ethereum node.

Wraps web3.py's ``AsyncWeb3`` and exposes exactly the node operations the
adapter consumes. web3 and transport failures are translated into the
adapter's ``TransportError``/``NotFoundError`` at this boundary.
"""

import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from web3 import AsyncWeb3, Web3
from web3.contract.async_contract import AsyncContract, AsyncContractFunction
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.types import RPCEndpoint

from ..errors import NotFoundError, TransportError
from ..models import PendingTxSnapshot, to_bytes

T = TypeVar("T")


class EthClient:
    """
    Node RPC client used by every adapter component.

    Implements the ``ReadsLogs``, ``ReadsReceipts``, ``SuggestsGasPrice``,
    ``ReadsFeeHistory``, ``ReadsPendingTransactions``, ``ReadsContractState``
    and ``SubmitsTransactions`` capabilities.
    """

    def __init__(self, rpc_url: str, request_timeout: int = 30, w3: AsyncWeb3 | None = None):
        """
        Initialize the client.

        Args:
            rpc_url: HTTP(S) RPC endpoint URL
            request_timeout: Per-request timeout in seconds
            w3: Pre-built AsyncWeb3 instance (mainly for tests)
        """
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _guard(self, what: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (TransactionNotFound, BlockNotFound) as e:
            raise NotFoundError(f"{what}: {e}") from e
        except Exception as e:
            self.logger.debug(f"RPC call failed ({what}): {e}")
            raise TransportError(f"{what}: {e}") from e

    async def _raw_request(self, method: str, params: list[Any]) -> Any:
        response = await self._guard(
            method, self.w3.provider.make_request(RPCEndpoint(method), params)
        )
        if error := response.get("error"):
            raise TransportError(f"{method}: {error}")
        return response.get("result")

    async def chain_id(self) -> int:
        return await self._guard("eth_chainId", self.w3.eth.chain_id)

    async def block_number(self) -> int:
        return await self._guard("eth_blockNumber", self.w3.eth.block_number)

    async def finalized_block_number(self) -> int:
        block = await self._guard("eth_getBlockByNumber(finalized)", self.w3.eth.get_block("finalized"))
        return block["number"]

    async def get_logs(self, address: str, topic: bytes, from_block: int, to_block: int) -> list[dict[str, Any]]:
        """Fetch logs emitted by ``address`` with ``topic`` in ``[from_block, to_block]``."""
        return await self._guard(
            f"eth_getLogs({from_block}-{to_block})",
            self.w3.eth.get_logs({
                "address": Web3.to_checksum_address(address),
                "topics": [Web3.to_hex(topic)],
                "fromBlock": from_block,
                "toBlock": to_block,
            }),
        )

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        return await self._guard(f"eth_getTransactionByHash({tx_hash})", self.w3.eth.get_transaction(tx_hash))

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        """
        Fetch a receipt.

        Raises:
            NotFoundError: If the transaction is not mined yet
        """
        return await self._guard(
            f"eth_getTransactionReceipt({tx_hash})", self.w3.eth.get_transaction_receipt(tx_hash)
        )

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return await self._guard(
            "eth_getTransactionCount",
            self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), block),
        )

    async def suggest_gas_price(self) -> int:
        return await self._guard("eth_gasPrice", self.w3.eth.gas_price)

    async def fee_history(self, block_count: int, newest_block: int, reward_percentiles: list[float]) -> dict[str, Any]:
        return await self._guard(
            f"eth_feeHistory({newest_block})",
            self.w3.eth.fee_history(block_count, newest_block, reward_percentiles),
        )

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return await self._guard("eth_estimateGas", self.w3.eth.estimate_gas(tx))

    async def pending_transactions_from(self, address: str) -> list[PendingTxSnapshot]:
        """
        Return pending txs sent from ``address`` sorted by nonce.

        Uses the ``txpool_contentFrom`` introspection endpoint.
        """
        content = await self._raw_request("txpool_contentFrom", [Web3.to_checksum_address(address)])
        pending = (content or {}).get("pending") or {}
        snapshots = [PendingTxSnapshot.from_rpc(tx) for tx in pending.values()]
        return sorted(snapshots, key=lambda s: s.nonce)

    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract:
        """Bind an ABI to a deployed contract address."""
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def call(self, function: AsyncContractFunction, block: int | str = "latest") -> Any:
        """
        Call a bound contract view function at ``block``.

        Args:
            function: Contract function with its arguments applied,
                e.g. ``handler.functions.getCommitment(key)``
            block: Block number or tag to read state at

        Returns:
            The decoded return value(s) as web3 returns them
        """
        return await self._guard(
            f"eth_call({function.fn_name})", function.call(block_identifier=block)
        )

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        tx_hash = await self._guard("eth_sendRawTransaction", self.w3.eth.send_raw_transaction(raw_tx))
        return Web3.to_hex(tx_hash)

    async def debug_trace_transaction(self, tx_hash: str) -> bytes:
        """
        Return the revert output of a transaction using the call tracer.

        Raises:
            NotFoundError: If the trace carries no output
        """
        frame = await self._raw_request("debug_traceTransaction", [tx_hash, {"tracer": "callTracer"}])
        if output := _search_output(frame or {}):
            return output
        raise NotFoundError("execution reverted without error data")


def _search_output(frame: dict[str, Any]) -> bytes:
    if output := to_bytes(frame.get("output")):
        return output
    for call in frame.get("calls") or []:
        if frame_output := _search_output(call):
            return frame_output
    return b""
