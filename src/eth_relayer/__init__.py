"""
Ethereum relay adapter package.

Ethereum-side adapter of an IBC packet relayer: packet discovery, gas
pricing, transaction lifecycle and revert decoding.
"""

from .chain import EthereumChain
from .config import ChainConfig
from .error_repository import ErrorRepository
from .fee_calculator import FeeCalculator
from .models import PacketInfo
from .packet_sync import PacketSyncEngine
from .tx_manager import TxLifecycleManager

__all__ = [
    "ChainConfig",
    "EthereumChain",
    "ErrorRepository",
    "FeeCalculator",
    "PacketInfo",
    "PacketSyncEngine",
    "TxLifecycleManager",
]
__version__ = "0.1.0"
