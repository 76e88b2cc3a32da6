"""
Ethereum chain adapter.

This module contains the facade the relayer framework talks to. It wires the
node client, packet discovery, fee computation, transaction handling and
revert decoding together from a single chain configuration.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from .capabilities import ChainNode, CounterpartyQuerier, Signer
from .checkpoint import CheckpointStore
from .config import ChainConfig
from .error_repository import ErrorRepository
from .errors import ConfigurationError
from .fee_calculator import FeeCalculator
from .models import CheckpointDirection, PacketInfo, PendingTxSnapshot, TxResult
from .packet_sync import PacketSyncEngine
from .tx_manager import LocalAccountSigner, TxLifecycleManager
from .utils.eth_client import EthClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class EthereumChain:
    """
    One Ethereum chain as seen by the relayer.

    Read-only queries work without a signer; sending and replacing
    transactions require one.
    """

    def __init__(
        self,
        config: ChainConfig,
        client: ChainNode,
        signer: Signer | None = None,
        errors: ErrorRepository | None = None,
        shutdown: asyncio.Event | None = None,
    ):
        """
        Initialize the chain adapter.

        Args:
            config: Chain configuration
            client: Node client implementing the capability protocols
            signer: Signer for the relayer account, if transactions are sent
            errors: Error catalog used to decode reverts
            shutdown: Event that stops wait loops when set
        """
        self.config = config
        self.client = client
        self.signer = signer
        self.errors = errors or ErrorRepository()
        self.shutdown_event = shutdown or asyncio.Event()

        self.checkpoints = CheckpointStore(
            config.data_dir,
            {
                CheckpointDirection.SENT: config.initial_send_checkpoint,
                CheckpointDirection.RECEIVED: config.initial_recv_checkpoint,
            },
        )
        self.packets = PacketSyncEngine(client, config, self.checkpoints)

        self.fees: FeeCalculator | None = None
        self.txs: TxLifecycleManager | None = None
        if signer is not None:
            self.fees = FeeCalculator(client, config, signer.address)
            self.txs = TxLifecycleManager(
                client, signer, self.fees, self.errors, config, shutdown=self.shutdown_event
            )

    @classmethod
    def from_config(cls, config: ChainConfig, shutdown: asyncio.Event | None = None) -> "EthereumChain":
        """Build the adapter with an RPC client, local signer and ABI error catalog."""
        client = EthClient(config.rpc_addr)
        signer = LocalAccountSigner(config.private_key) if config.private_key else None
        errors = ErrorRepository.from_artifact_dirs(config.abi_paths)
        chain = cls(config, client, signer=signer, errors=errors, shutdown=shutdown)
        logger.info(
            f"Initialized chain {config.chain_id} "
            f"(signer: {signer.address if signer else '[NONE]'})"
        )
        return chain

    @property
    def chain_id(self) -> str:
        return self.config.chain_id

    def _require_txs(self) -> TxLifecycleManager:
        if self.txs is None:
            raise ConfigurationError("PRIVATE_KEY is required to send transactions")
        return self.txs

    async def validate_chain_id(self) -> None:
        """
        Check that the node serves the configured EVM chain.

        Raises:
            ConfigurationError: If the node reports another chain id
        """
        actual = await self.client.chain_id()
        if actual != self.config.eth_chain_id:
            raise ConfigurationError(
                f"chain id mismatch: configured={self.config.eth_chain_id}, node={actual}"
            )

    async def latest_height(self) -> int:
        return await self.client.block_number()

    async def get_latest_finalized_height(self) -> int:
        return await self.client.finalized_block_number()

    async def confirm_connection_opened(self) -> bool:
        return await self.packets.connection_opened()

    async def query_unreceived_packets(self, sequences: list[int], height: int) -> list[int]:
        """Sequences among ``sequences`` that have no receipt on this chain at ``height``."""
        port_id, channel_id = self.config.port_id, self.config.channel_id
        return [
            seq for seq in sequences
            if not await self.packets.has_packet_receipt(port_id, channel_id, seq, height)
        ]

    async def query_unreceived_acknowledgements(self, sequences: list[int], height: int) -> list[int]:
        """Sequences among ``sequences`` whose commitment still exists on this chain at ``height``."""
        port_id, channel_id = self.config.port_id, self.config.channel_id
        return [
            seq for seq in sequences
            if await self.packets.has_commitment(port_id, channel_id, seq, height)
        ]

    async def query_unfinalized_relay_packets(self, height: int, counterparty: CounterpartyQuerier) -> list[PacketInfo]:
        return await self.packets.query_unfinalized_relay_packets(height, counterparty)

    async def query_unfinalized_relay_acknowledgements(self, height: int, counterparty: CounterpartyQuerier) -> list[PacketInfo]:
        return await self.packets.query_unfinalized_relay_acknowledgements(height, counterparty)

    async def list_sent_packets(self, height: int | None = None) -> list[PacketInfo]:
        """Sent packets from the checkpoint to ``height`` without saving the checkpoint."""
        if height is None:
            height = await self.latest_height()
        checkpoint = self.checkpoints.load(CheckpointDirection.SENT)
        if height < checkpoint:
            return []
        return await self.packets.find_sent_packets(checkpoint, height)

    async def send_transaction(self, tx_params: dict[str, Any]) -> TxResult:
        return await self._require_txs().send_transaction(tx_params)

    async def send_calls(self, calls: Sequence[dict[str, Any]]) -> list[TxResult]:
        return await self._require_txs().send_calls(calls)

    async def show_pending_tx(self) -> PendingTxSnapshot:
        return await self._require_txs().show_pending_tx()

    async def replace_pending_tx(self, tx_hash: str) -> TxResult | None:
        return await self._require_txs().replace_pending_tx(tx_hash)
