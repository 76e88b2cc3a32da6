"""Shared fixtures for the relay adapter tests."""

import pytest
from web3 import Web3

from eth_relayer.config import ChainConfig

IBC_ADDRESS = "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"
SENDER = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb7"
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


def offline_contract(address, abi):
    """Contract object for building calls without a node."""
    return Web3().eth.contract(address=Web3.to_checksum_address(address), abi=abi)


@pytest.fixture
def make_config(tmp_path):
    """Factory for a valid ChainConfig storing checkpoints under tmp_path."""
    def factory(**overrides) -> ChainConfig:
        values = {
            "chain_id": "ibc0",
            "eth_chain_id": 1337,
            "rpc_addr": "http://localhost:8545",
            "ibc_address": IBC_ADDRESS,
            "port_id": "transfer",
            "channel_id": "channel-0",
            "home_path": str(tmp_path),
        }
        values.update(overrides)
        return ChainConfig(**values)
    return factory
