"""
Shared data models for the Ethereum relay adapter.

This module contains data classes and types used across the relayer components.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any

from eth_utils import to_checksum_address
from hexbytes import HexBytes


def to_int(value: Any) -> int:
    """Convert an RPC quantity (int or 0x-prefixed hex string) to int."""
    match value:
        case None:
            return 0
        case bool():
            return int(value)
        case int():
            return value
        case str() if value.startswith(("0x", "0X")):
            return int(value, 16)
        case str():
            return int(value)
        case _:
            raise TypeError(f"Unexpected quantity type: {type(value)}")


def to_bytes(value: Any) -> bytes:
    """Convert 0x-prefixed hex strings and bytes-likes to bytes."""
    if value is None:
        return b""
    return bytes(HexBytes(value))


def to_access_list(entries: Any) -> tuple[dict[str, Any], ...]:
    """
    Normalise an EIP-2930 access list to plain JSON-style entries.

    web3 returns ``AttributeDict`` entries holding ``HexBytes`` storage keys,
    which eth-account does not accept when signing.
    """
    return tuple(
        {
            "address": to_checksum_address(entry["address"]),
            "storageKeys": [HexBytes(key).to_0x_hex() for key in entry.get("storageKeys") or ()],
        }
        for entry in entries or ()
    )


class CheckpointDirection(Enum):
    """Event direction tracked by a checkpoint; the value is the file name."""
    SENT = "send.cp"
    RECEIVED = "recv.cp"


class TxType(IntEnum):
    """EIP-2718 transaction type identifiers."""
    LEGACY = 0
    ACCESS_LIST = 1
    DYNAMIC_FEE = 2
    BLOB = 3

    @property
    def uses_gas_price(self) -> bool:
        return self in (TxType.LEGACY, TxType.ACCESS_LIST)


@dataclass(frozen=True, slots=True)
class Height:
    """IBC height as (revision number, revision height)."""
    revision_number: int = 0
    revision_height: int = 0


@dataclass(frozen=True, slots=True)
class PacketInfo:
    """A packet decoded from a packet-lifecycle event.

    Attributes:
        sequence: Packet sequence number on the source channel
        source_port: Port on the sending chain
        source_channel: Channel on the sending chain
        destination_port: Port on the receiving chain
        destination_channel: Channel on the receiving chain
        data: Opaque application payload
        timeout_height: Height after which the packet times out
        timeout_timestamp: Timestamp (ns) after which the packet times out
        acknowledgement: Acknowledgement bytes, present for received packets
        event_height: Block height of the event the packet was decoded from
    """
    sequence: int
    source_port: str
    source_channel: str
    destination_port: str
    destination_channel: str
    data: bytes
    timeout_height: Height
    timeout_timestamp: int
    acknowledgement: bytes | None = None
    event_height: int = 0

    def with_acknowledgement(self, acknowledgement: bytes) -> "PacketInfo":
        return replace(self, acknowledgement=acknowledgement)


@dataclass(frozen=True, slots=True)
class GasFeeBounds:
    """Per-field increments and ceilings (wei) for replacing a stuck tx."""
    gas_price_inc: int
    max_gas_price: int
    gas_tip_cap_inc: int
    max_gas_tip_cap: int
    gas_fee_cap_inc: int
    max_gas_fee_cap: int


@dataclass(frozen=True, slots=True)
class PendingTxSnapshot:
    """A sender's pending transaction as reported by the node's txpool.

    Legacy and access-list transactions have no tip/fee caps of their own;
    the mempool prices them by gas price, so ``tip_cap``/``fee_cap`` fall
    back to it.
    """
    hash: str
    nonce: int
    tx_type: TxType
    gas_price: int = 0
    gas_tip_cap: int | None = None
    gas_fee_cap: int | None = None
    sender: str = ""
    to: str | None = None
    value: int = 0
    gas: int = 0
    data: bytes = b""
    chain_id: int | None = None
    access_list: tuple[dict[str, Any], ...] = ()
    max_fee_per_blob_gas: int | None = None
    blob_versioned_hashes: tuple = ()

    @property
    def tip_cap(self) -> int:
        return self.gas_price if self.gas_tip_cap is None else self.gas_tip_cap

    @property
    def fee_cap(self) -> int:
        return self.gas_price if self.gas_fee_cap is None else self.gas_fee_cap

    @classmethod
    def from_rpc(cls, tx: Mapping[str, Any]) -> "PendingTxSnapshot":
        """Build a snapshot from an RPC transaction object.

        Accepts both raw JSON-RPC objects (hex quantities) and web3-formatted
        ones (ints, HexBytes).
        """
        tx_hash = tx.get("hash", "")
        if not isinstance(tx_hash, str):
            tx_hash = HexBytes(tx_hash).to_0x_hex()
        tip = tx.get("maxPriorityFeePerGas")
        fee = tx.get("maxFeePerGas")
        blob_fee = tx.get("maxFeePerBlobGas")
        chain_id = tx.get("chainId")
        return cls(
            hash=tx_hash,
            nonce=to_int(tx.get("nonce")),
            tx_type=TxType(to_int(tx.get("type", 0))),
            gas_price=to_int(tx.get("gasPrice")),
            gas_tip_cap=None if tip is None else to_int(tip),
            gas_fee_cap=None if fee is None else to_int(fee),
            sender=tx.get("from", ""),
            to=tx.get("to"),
            value=to_int(tx.get("value")),
            gas=to_int(tx.get("gas")),
            data=to_bytes(tx.get("input", tx.get("data"))),
            chain_id=None if chain_id is None else to_int(chain_id),
            access_list=to_access_list(tx.get("accessList")),
            max_fee_per_blob_gas=None if blob_fee is None else to_int(blob_fee),
            blob_versioned_hashes=tuple(HexBytes(h).to_0x_hex() for h in tx.get("blobVersionedHashes") or ()),
        )

    def to_json(self) -> dict[str, Any]:
        """Render the snapshot for display."""
        out: dict[str, Any] = {
            "hash": self.hash,
            "type": int(self.tx_type),
            "nonce": self.nonce,
            "from": self.sender,
            "to": self.to,
            "value": self.value,
            "gas": self.gas,
            "input": "0x" + self.data.hex(),
        }
        if self.tx_type.uses_gas_price:
            out["gasPrice"] = self.gas_price
        else:
            out["maxPriorityFeePerGas"] = self.tip_cap
            out["maxFeePerGas"] = self.fee_cap
        if self.chain_id is not None:
            out["chainId"] = self.chain_id
        return out


@dataclass(frozen=True, slots=True)
class GasPricing:
    """Result of a fee computation: either a gas price or tip/fee caps."""
    gas_price: int | None = None
    gas_tip_cap: int | None = None
    gas_fee_cap: int | None = None

    @property
    def is_dynamic(self) -> bool:
        return self.gas_fee_cap is not None

    def to_tx_params(self) -> dict[str, int]:
        if self.is_dynamic:
            return {
                "maxPriorityFeePerGas": self.gas_tip_cap,
                "maxFeePerGas": self.gas_fee_cap,
            }
        return {"gasPrice": self.gas_price}


@dataclass(frozen=True, slots=True)
class TxResult:
    """Outcome of a mined transaction."""
    tx_hash: str
    block_number: int
    block_hash: str
    transaction_index: int
    status: int
    gas_used: int = 0
    revert_reason: str = ""
    logs: tuple = field(default=(), repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == 1
