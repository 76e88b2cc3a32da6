"""
Transaction lifecycle management.

This module submits signed transactions, waits for their receipts, explains
failures through the error repository and replaces transactions that stay
pending longer than configured.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract.async_contract import AsyncContract

from .capabilities import Signer, TxNode
from .config import ChainConfig
from .error_repository import ErrorRepository
from .errors import (
    CancellationError,
    ConfigurationError,
    NotFoundError,
    RelayerError,
    RevertDecodingError,
    RevertedError,
    TransportError,
)
from .fee_calculator import FeeCalculator
from .models import GasFeeBounds, PendingTxSnapshot, TxResult, TxType, to_bytes, to_int
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

NO_REVERT_REASON_SOURCE = "no way to get revert reason"

_TX_TYPE_NAMES = {
    TxType.LEGACY: "LegacyTx",
    TxType.ACCESS_LIST: "AccessListTx",
    TxType.DYNAMIC_FEE: "DynamicFeeTx",
    TxType.BLOB: "BlobTx",
}


class LocalAccountSigner:
    """Signs transactions with a private key held in memory."""

    def __init__(self, private_key: str):
        self.account: LocalAccount = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        signed = self.account.sign_transaction(tx)
        return bytes(signed.raw_transaction)


class ReplaceState(Enum):
    PENDING = "pending"
    CHECK_AGE = "check_age"
    STILL_PENDING = "still_pending"
    REPLACE = "replace"
    RESOLVED = "resolved"


def build_replacement(tx: PendingTxSnapshot, bounds: GasFeeBounds) -> dict[str, Any]:
    """
    Build params for a transaction replacing ``tx`` with increased fees.

    Legacy and access-list transactions raise ``gasPrice``; dynamic-fee and
    blob transactions raise both ``maxPriorityFeePerGas`` and ``maxFeePerGas``.

    Raises:
        ConfigurationError: If an increased value exceeds its configured maximum
    """
    type_name = _TX_TYPE_NAMES[tx.tx_type]
    params: dict[str, Any] = {
        "nonce": tx.nonce,
        "gas": tx.gas,
        "value": tx.value,
        "data": "0x" + tx.data.hex(),
    }
    if tx.to is not None:
        params["to"] = tx.to
    if tx.chain_id is not None:
        params["chainId"] = tx.chain_id

    def bumped(field: str, value: int, inc: int, maximum: int) -> int:
        new_value = value + inc
        if new_value > maximum:
            raise ConfigurationError(
                f"{field} > max : {type_name} value={new_value},max={maximum}"
            )
        return new_value

    if tx.tx_type.uses_gas_price:
        params["gasPrice"] = bumped("gasPrice", tx.gas_price, bounds.gas_price_inc, bounds.max_gas_price)
    else:
        params["maxPriorityFeePerGas"] = bumped(
            "gasTipCap", tx.tip_cap, bounds.gas_tip_cap_inc, bounds.max_gas_tip_cap
        )
        params["maxFeePerGas"] = bumped(
            "gasFeeCap", tx.fee_cap, bounds.gas_fee_cap_inc, bounds.max_gas_fee_cap
        )

    if tx.tx_type != TxType.LEGACY:
        params["type"] = int(tx.tx_type)
        params["accessList"] = list(tx.access_list)
    if tx.tx_type == TxType.BLOB:
        params["maxFeePerBlobGas"] = tx.max_fee_per_blob_gas or 0
        params["blobVersionedHashes"] = list(tx.blob_versioned_hashes)
    return params


async def find_items(size: int, fits: Callable[[int], Awaitable[None]]) -> int:
    """
    Find how many leading items, at most ``size``, can go into one batch.

    ``fits(n)`` raises ``RelayerError`` when the first ``n`` items do not fit.
    The whole batch is tried first; otherwise the count is bisected, assuming
    that any count below a fitting one fits as well.

    Raises:
        ValueError: If ``size`` is not positive
        NotFoundError: If not even a single item fits
    """
    if size <= 0:
        raise ValueError("empty items")
    try:
        await fits(size)
        return size
    except RelayerError as e:
        logger.debug(f"Batch of {size} items does not fit: {e}")

    low, high = 0, size - 1
    while low < high:
        mid = (low + high) // 2
        try:
            await fits(mid + 1)
            low = mid + 1
        except RelayerError:
            high = mid
    if low == 0:
        raise NotFoundError("not even a single item fits in a batch")
    return low


class TxLifecycleManager:
    """
    Sends transactions for the relayer account and follows them to inclusion.

    Every wait loop checks ``shutdown`` at its iteration boundaries and raises
    ``CancellationError`` once it is set. Task cancellation propagates as is.
    """

    def __init__(
        self,
        client: TxNode,
        signer: Signer,
        fees: FeeCalculator,
        errors: ErrorRepository,
        config: ChainConfig,
        shutdown: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the manager.

        Args:
            client: Node client for receipts, submission, estimation and
                transaction lookups
            signer: Signer for the relayer account
            fees: Fee calculator for the same account
            errors: Repository used to decode revert data
            config: Chain configuration
            shutdown: Event that stops the wait loops when set
            sleep: Coroutine used to wait between polls
            clock: Monotonic clock used to measure pending time
        """
        self.client = client
        self.signer = signer
        self.fees = fees
        self.errors = errors
        self.config = config
        self.shutdown = shutdown
        self._sleep = sleep
        self._clock = clock

    def _check_shutdown(self) -> None:
        if self.shutdown is not None and self.shutdown.is_set():
            raise CancellationError("operation cancelled by shutdown")

    async def submit(self, raw_tx: bytes) -> str:
        """Broadcast a signed transaction and return its hash."""
        self._check_shutdown()
        tx_hash = await self.client.send_raw_transaction(raw_tx)
        logger.info(f"Submitted tx {tx_hash}")
        logger.debug(f"Raw tx {tx_hash}: 0x{raw_tx.hex()}")
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """
        Poll for the receipt of ``tx_hash``.

        Makes up to ``max_retry_for_inclusion`` attempts spaced by the average
        block time. Missing receipts and transport failures are retried.

        Raises:
            CancellationError: If shutdown was requested between attempts
            NotFoundError | TransportError: The last error once attempts run out
        """
        attempts = self.config.max_retry_for_inclusion
        last_error: RelayerError | None = None
        for attempt in range(1, attempts + 1):
            self._check_shutdown()
            try:
                return await self.client.get_transaction_receipt(tx_hash)
            except (NotFoundError, TransportError) as e:
                last_error = e
                logger.debug(f"Receipt for {tx_hash} not available (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await self._sleep(self.config.receipt_poll_delay)

        logger.warning(f"Gave up waiting for receipt of {tx_hash} after {attempts} attempts")
        raise last_error

    def decode_revert(self, raw: bytes) -> str:
        """Decode revert data, falling back to its hex form."""
        try:
            return self.errors.parse_error(raw)
        except RevertDecodingError as e:
            logger.debug(f"Could not decode revert data 0x{raw.hex()}: {e}")
            return "0x" + raw.hex()

    async def get_revert_reason(self, receipt: dict[str, Any]) -> tuple[str, bytes]:
        """
        Explain why the transaction of ``receipt`` failed.

        Returns:
            ``(reason, raw_error_data)``
        """
        tx_hash = _hash_str(receipt.get("transactionHash"))
        if revert := receipt.get("revertReason"):
            raw = to_bytes(revert)
        elif self.config.enable_debug_trace:
            try:
                raw = await self.client.debug_trace_transaction(tx_hash)
            except (NotFoundError, TransportError) as e:
                logger.warning(f"Failed to trace tx {tx_hash}: {e}")
                return f"failed to get revert reason: {e}", b""
        else:
            return NO_REVERT_REASON_SOURCE, b""
        return self.decode_revert(raw), raw

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        """
        Estimate the gas limit for ``tx`` scaled by ``gas_estimate_rate``.

        The result is capped at ``max_gas_limit``. When the estimation is
        reverted, the decoded reason is logged and the error propagates.
        """
        try:
            estimated = await self.client.estimate_gas(tx)
        except TransportError as e:
            if raw := _rpc_error_data(e):
                logger.error(
                    f"Gas estimation reverted: revertReason={self.decode_revert(raw)}, "
                    f"rawErrorData=0x{raw.hex()}"
                )
            raise

        gas = self.config.gas_estimate_rate.mul(estimated)
        if gas > self.config.max_gas_limit:
            logger.warning(
                f"Estimated gas {gas} exceeds max_gas_limit, using {self.config.max_gas_limit}"
            )
            gas = self.config.max_gas_limit
        return gas

    async def send_transaction(self, tx_params: dict[str, Any]) -> TxResult:
        """
        Complete, sign and send a transaction, then wait for its receipt.

        Missing ``from``, ``nonce``, ``chainId``, ``gas`` and fee fields are
        filled in.

        Raises:
            RevertedError: If the transaction was mined but failed
        """
        tx = dict(tx_params)
        tx.setdefault("from", self.signer.address)
        tx.setdefault("chainId", self.config.eth_chain_id)
        if "nonce" not in tx:
            tx["nonce"] = await self.client.get_transaction_count(self.signer.address, "pending")
        if "gas" not in tx:
            tx["gas"] = await self.estimate_gas(tx)

        tx = await self.fees.apply(tx, nonce=tx["nonce"])
        if not any(k in tx for k in ("gasPrice", "maxFeePerGas")):
            tx["gasPrice"] = await self.client.suggest_gas_price()

        return await self._sign_submit_and_wait(tx)

    async def send_calls(self, calls: Sequence[dict[str, Any]]) -> list[TxResult]:
        """
        Send contract calls given as ``{"to", "data"}`` params.

        Without ``multicall3_address`` every call becomes its own transaction.
        With it, the calls are packed into Multicall3 ``aggregate``
        transactions: each one carries the longest run of the remaining calls
        whose aggregate still passes gas estimation.

        Raises:
            NotFoundError: If the next call alone fails gas estimation
            RevertedError: If a sent transaction was mined but failed
        """
        if not self.config.multicall3_address:
            return [await self.send_transaction(call) for call in calls]

        multicall = self.client.contract(
            self.config.multicall3_address, ContractUtility.get_contract_abi("Multicall3")
        )
        results: list[TxResult] = []
        cursor = 0
        while cursor < len(calls):
            self._check_shutdown()
            remaining = calls[cursor:]
            built: dict[int, dict[str, Any]] = {}

            async def fits(count: int) -> None:
                tx = self._aggregate_tx(multicall, remaining[:count])
                tx["gas"] = await self.estimate_gas(tx)
                built[count] = tx

            count = await find_items(len(remaining), fits)
            logger.info(f"Sending {count} of {len(remaining)} remaining calls through multicall3")
            results.append(await self.send_transaction(built[count]))
            cursor += count
        return results

    def _aggregate_tx(self, multicall: AsyncContract, calls: Sequence[dict[str, Any]]) -> dict[str, Any]:
        aggregated = [(Web3.to_checksum_address(call["to"]), to_bytes(call.get("data"))) for call in calls]
        return {
            "from": self.signer.address,
            "to": multicall.address,
            "data": multicall.encode_abi("aggregate", args=[aggregated]),
        }

    async def _sign_submit_and_wait(self, tx: dict[str, Any]) -> TxResult:
        tx.pop("from", None)
        raw_tx = self.signer.sign_transaction(tx)
        tx_hash = await self.submit(raw_tx)
        receipt = await self.wait_for_receipt(tx_hash)

        result = TxResult(
            tx_hash=tx_hash,
            block_number=to_int(receipt.get("blockNumber")),
            block_hash=_hash_str(receipt.get("blockHash")),
            transaction_index=to_int(receipt.get("transactionIndex")),
            status=to_int(receipt.get("status")),
            gas_used=to_int(receipt.get("gasUsed")),
            logs=tuple(receipt.get("logs") or ()),
        )
        if result.succeeded:
            logger.info(
                f"Tx {tx_hash} included: block={result.block_number}, "
                f"blockHash={result.block_hash}, txIndex={result.transaction_index}"
            )
            return result

        reason, raw = await self.get_revert_reason(receipt)
        logger.error(
            f"Tx {tx_hash} reverted: block={result.block_number}, revertReason={reason}, "
            f"rawErrorData=0x{raw.hex()}, rawTx=0x{raw_tx.hex()}"
        )
        raise RevertedError(tx_hash, reason, raw)

    async def pending_transactions(self) -> list[PendingTxSnapshot]:
        return await self.client.pending_transactions_from(self.signer.address)

    async def show_pending_tx(self) -> PendingTxSnapshot:
        """
        Return the relayer account's lowest-nonce pending transaction.

        Raises:
            NotFoundError: If nothing is pending
        """
        pending = await self.pending_transactions()
        if not pending:
            raise NotFoundError("no pending transaction was found")
        return min(pending, key=lambda tx: tx.nonce)

    async def replace_pending_tx(self, tx_hash: str) -> TxResult | None:
        """
        Watch ``tx_hash`` and replace it if it stays pending too long.

        Every ``check_interval`` seconds the transaction is looked up. Once it
        is no longer pending the call returns None. After
        ``pending_duration_to_replace`` seconds a replacement with the same
        nonce and increased fees is sent and its result returned.

        Raises:
            ConfigurationError: If no replacement config is set or a fee
                would exceed its maximum
            RevertedError: If the replacement was mined but failed
            CancellationError: If shutdown was requested
        """
        cfg = self.config.replace_tx_config
        if cfg is None:
            raise ConfigurationError('"replace_tx_config" in chain config is required to replace tx')
        bounds = cfg.gas_fee_bounds()

        started = self._clock()
        state = ReplaceState.PENDING
        tx: dict[str, Any] = {}
        while True:
            match state:
                case ReplaceState.PENDING | ReplaceState.STILL_PENDING:
                    self._check_shutdown()
                    await self._sleep(cfg.check_interval)
                    self._check_shutdown()
                    tx = await self.client.get_transaction(tx_hash)
                    if tx.get("blockNumber") is not None:
                        logger.info(f"Tx {tx_hash} is not pending")
                        state = ReplaceState.RESOLVED
                    else:
                        state = ReplaceState.CHECK_AGE
                case ReplaceState.CHECK_AGE:
                    if self._clock() - started > cfg.pending_duration_to_replace:
                        state = ReplaceState.REPLACE
                    else:
                        logger.info(f"Tx {tx_hash} is still pending")
                        state = ReplaceState.STILL_PENDING
                case ReplaceState.REPLACE:
                    logger.info(f"Trying to replace pending tx {tx_hash}")
                    return await self._replace(PendingTxSnapshot.from_rpc(tx), bounds)
                case ReplaceState.RESOLVED:
                    return None

    async def _replace(self, pending: PendingTxSnapshot, bounds: GasFeeBounds) -> TxResult:
        params = build_replacement(pending, bounds)
        params.setdefault("chainId", self.config.eth_chain_id)
        result = await self._sign_submit_and_wait(params)
        logger.info(f"Replaced tx {pending.hash} with {result.tx_hash}")
        return result


def _hash_str(value: Any) -> str:
    if value is None or isinstance(value, str):
        return value or ""
    return Web3.to_hex(value)


def _rpc_error_data(error: BaseException) -> bytes:
    """Extract revert data carried by a (wrapped) web3 RPC error."""
    cause = error.__cause__ or error
    data = getattr(cause, "data", None)
    if isinstance(data, str) and data.startswith("0x"):
        try:
            return to_bytes(data)
        except ValueError:
            return b""
    return b""
