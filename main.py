#!/usr/bin/env python3

import argparse
import asyncio
import json
import logging
import sys

from eth_relayer.chain import EthereumChain
from eth_relayer.config import ChainConfig
from eth_relayer.errors import RelayerError

# Set up root logger
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ethereum IBC relay adapter")
    parser.add_argument(
        "--config",
        required=True,
        help="Path to the JSON chain config"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    pending = commands.add_parser("pending", help="Manage the relayer account's pending transactions")
    pending_commands = pending.add_subparsers(dest="pending_command", required=True)
    pending_commands.add_parser("show", help="Print the lowest-nonce pending transaction")
    pending_commands.add_parser("replace", help="Replace the lowest-nonce pending transaction if it is stuck")

    packets = commands.add_parser("packets", help="List sent packets that are still committed")
    packets.add_argument(
        "--height",
        type=int,
        default=None,
        help="Scan up to this block (default: latest)"
    )
    return parser


async def run(args: argparse.Namespace, chain: EthereumChain) -> None:
    match args.command, getattr(args, "pending_command", None):
        case "pending", "show":
            tx = await chain.show_pending_tx()
            print(json.dumps(tx.to_json(), indent=2))
        case "pending", "replace":
            tx = await chain.show_pending_tx()
            logger.info(f"Watching pending tx {tx.hash} (nonce {tx.nonce})")
            if result := await chain.replace_pending_tx(tx.hash):
                logger.info(f"Replacement tx {result.tx_hash} included in block {result.block_number}")
        case "packets", _:
            for packet in await chain.list_sent_packets(args.height):
                print(json.dumps({
                    "sequence": packet.sequence,
                    "source": f"{packet.source_port}/{packet.source_channel}",
                    "destination": f"{packet.destination_port}/{packet.destination_channel}",
                    "event_height": packet.event_height,
                    "data": "0x" + packet.data.hex(),
                }))


async def main():
    """Main entry point for the relay adapter CLI."""
    args = build_parser().parse_args()

    try:
        config = ChainConfig.from_file(args.config)
        config.log_config()
        chain = EthereumChain.from_config(config)
    except (ValueError, OSError) as e:
        logger.error(f"Configuration error: {e}")
        logger.error("The chain config is a JSON file with at least:")
        logger.error("  - chain_id, eth_chain_id, rpc_addr, ibc_address, port_id, channel_id")
        logger.error("Environment overrides:")
        logger.error("  - RPC_ADDR: RPC endpoint replacing rpc_addr")
        logger.error("  - PRIVATE_KEY: Private key for signing transactions")
        sys.exit(1)

    try:
        await run(args, chain)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        chain.shutdown_event.set()
    except RelayerError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
