"""
Packet discovery from IBC handler events.

Scans ``SendPacket``, ``RecvPacket`` and ``WriteAcknowledgement`` logs in
bounded block windows, resolves which packets still need relaying and keeps a
persisted per-direction checkpoint so scans resume where they left off.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from eth_abi import decode
from web3 import Web3

from .capabilities import CounterpartyQuerier, PacketSource
from .checkpoint import CheckpointStore
from .config import ChainConfig
from .errors import NotFoundError
from .models import CheckpointDirection, Height, PacketInfo, to_bytes, to_int
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

HEIGHT_TYPE = "(uint64,uint64)"
PACKET_TYPE = f"(uint64,string,string,string,string,bytes,{HEIGHT_TYPE},uint64)"

CONNECTION_STATE_OPEN = 3


@dataclass(frozen=True, slots=True)
class EventSpec:
    """An IBC handler event whose arguments are all non-indexed."""
    name: str
    types: tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.types)})"

    @property
    def topic(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature))

    def decode(self, log: dict[str, Any]) -> tuple:
        return decode(list(self.types), to_bytes(log["data"]))


SEND_PACKET = EventSpec("SendPacket", ("uint64", "string", "string", HEIGHT_TYPE, "uint64", "bytes"))
RECV_PACKET = EventSpec("RecvPacket", (PACKET_TYPE,))
WRITE_ACKNOWLEDGEMENT = EventSpec("WriteAcknowledgement", ("string", "string", "uint64", "bytes"))


def commitment_key(port_id: str, channel_id: str, sequence: int) -> bytes:
    """Storage key of a packet commitment in the IBC handler."""
    return bytes(Web3.keccak(text=f"commitments/ports/{port_id}/channels/{channel_id}/sequences/{sequence}"))


@dataclass(frozen=True, slots=True)
class ChannelEnd:
    port_id: str
    channel_id: str


class PacketSyncEngine:
    """
    Discovers packets on the configured channel that still need relaying.

    The channel's counterparty and whether its connection is open are cached
    per instance once read; call ``refresh_channel`` to re-query them.
    """

    def __init__(self, client: PacketSource, config: ChainConfig, checkpoints: CheckpointStore):
        """
        Initialize the engine.

        Args:
            client: Node client providing logs and contract reads
            config: Chain configuration (handler address and channel)
            checkpoints: Store for the per-direction scan checkpoints
        """
        self.client = client
        self.config = config
        self.checkpoints = checkpoints
        self.ibc_handler = client.contract(config.ibc_address, ContractUtility.get_contract_abi("IBCHandler"))
        self._counterparty: ChannelEnd | None = None
        self._connection_id: str | None = None
        self._connection_opened = False

    async def counterparty(self) -> ChannelEnd:
        if self._counterparty is None:
            self._counterparty = await self._query_counterparty()
        return self._counterparty

    async def refresh_channel(self) -> ChannelEnd:
        self._connection_opened = False
        self._counterparty = await self._query_counterparty()
        return self._counterparty

    async def _query_counterparty(self) -> ChannelEnd:
        port_id, channel_id = self.config.port_id, self.config.channel_id
        channel, found = await self.client.call(self.ibc_handler.functions.getChannel(port_id, channel_id))
        if not found:
            raise NotFoundError(f"channel not found: portID={port_id} channelID={channel_id}")
        cp_port, cp_channel = channel[2]
        self._connection_id = channel[3][0] if channel[3] else None
        logger.info(f"Channel {port_id}/{channel_id} counterparty is {cp_port}/{cp_channel}")
        return ChannelEnd(cp_port, cp_channel)

    async def connection_opened(self) -> bool:
        """
        Whether the channel's connection is OPEN on this chain.

        Only a positive answer is cached; ``refresh_channel`` clears it.

        Raises:
            NotFoundError: If the channel has no connection or it does not exist
        """
        if self._connection_opened:
            return True
        await self.counterparty()
        if (connection_id := self._connection_id) is None:
            raise NotFoundError(f"channel has no connection hops: channelID={self.config.channel_id}")

        connection, found = await self.client.call(self.ibc_handler.functions.getConnection(connection_id))
        if not found:
            raise NotFoundError(f"connection not found: connectionID={connection_id}")
        self._connection_opened = connection[2] == CONNECTION_STATE_OPEN
        if self._connection_opened:
            logger.info(f"Connection {connection_id} is open")
        return self._connection_opened

    async def has_commitment(self, port_id: str, channel_id: str, sequence: int, height: int | str) -> bool:
        commitment = await self.client.call(
            self.ibc_handler.functions.getCommitment(commitment_key(port_id, channel_id, sequence)), height
        )
        return any(commitment)

    async def has_packet_receipt(self, port_id: str, channel_id: str, sequence: int, height: int | str) -> bool:
        return await self.client.call(
            self.ibc_handler.functions.hasPacketReceipt(port_id, channel_id, sequence), height
        )

    async def query_logs(self, event: EventSpec, from_height: int, to_height: int) -> list[dict[str, Any]]:
        """
        Fetch ``event`` logs in ``[from_height, to_height]``.

        The range is split into consecutive windows of
        ``blocks_per_event_query`` blocks queried in order.
        """
        step = self.config.blocks_per_event_query
        logs: list[dict[str, Any]] = []
        for start in range(from_height, to_height + 1, step):
            end = min(start + step - 1, to_height)
            window = await self.client.get_logs(self.config.ibc_address, event.topic, start, end)
            logger.debug(f"{event.name}: {len(window)} logs in blocks {start}-{end}")
            logs.extend(window)
        return logs

    async def find_sent_packets(self, checkpoint: int, height: int) -> list[PacketInfo]:
        """Packets sent on the channel in ``[checkpoint, height]`` whose commitment is still live."""
        logs = await self.query_logs(SEND_PACKET, checkpoint, height)
        if not logs:
            return []
        counterparty = await self.counterparty()

        packets = []
        for log in logs:
            sequence, src_port, src_channel, timeout_height, timeout_timestamp, data = SEND_PACKET.decode(log)
            if (src_port, src_channel) != (self.config.port_id, self.config.channel_id):
                continue
            packets.append(PacketInfo(
                sequence=sequence,
                source_port=src_port,
                source_channel=src_channel,
                destination_port=counterparty.port_id,
                destination_channel=counterparty.channel_id,
                data=data,
                timeout_height=Height(*timeout_height),
                timeout_timestamp=timeout_timestamp,
                event_height=to_int(log["blockNumber"]),
            ))

        live = []
        for packet in packets:
            if await self.has_commitment(packet.source_port, packet.source_channel, packet.sequence, height):
                live.append(packet)
        logger.info(f"Found {len(live)} sent packets with live commitments in blocks {checkpoint}-{height}")
        return live

    async def find_received_packets(self, checkpoint: int, height: int) -> list[PacketInfo]:
        """Packets received on the channel in ``[checkpoint, height]`` with their acknowledgements."""
        received = []
        for log in await self.query_logs(RECV_PACKET, checkpoint, height):
            (packet,) = RECV_PACKET.decode(log)
            sequence, src_port, src_channel, dst_port, dst_channel, data, timeout_height, timeout_timestamp = packet
            if (dst_port, dst_channel) != (self.config.port_id, self.config.channel_id):
                continue
            received.append(PacketInfo(
                sequence=sequence,
                source_port=src_port,
                source_channel=src_channel,
                destination_port=dst_port,
                destination_channel=dst_channel,
                data=data,
                timeout_height=Height(*timeout_height),
                timeout_timestamp=timeout_timestamp,
                event_height=to_int(log["blockNumber"]),
            ))
        if not received:
            return []

        ack_from = min(p.event_height for p in received)
        acks: dict[int, bytes] = {}
        for log in await self.query_logs(WRITE_ACKNOWLEDGEMENT, ack_from, height):
            dst_port, dst_channel, sequence, ack = WRITE_ACKNOWLEDGEMENT.decode(log)
            if (dst_port, dst_channel) == (self.config.port_id, self.config.channel_id):
                acks[sequence] = ack
        if not acks:
            return []

        packets = [p.with_acknowledgement(acks[p.sequence]) for p in received if p.sequence in acks]
        logger.info(f"Found {len(packets)} received packets with acknowledgements in blocks {checkpoint}-{height}")
        return packets

    async def query_unfinalized_relay_packets(self, height: int, counterparty: CounterpartyQuerier) -> list[PacketInfo]:
        """Sent packets not yet received on the counterparty's latest finalized height."""
        return await self._query_unfinalized(
            CheckpointDirection.SENT, height,
            self.find_sent_packets, counterparty.get_latest_finalized_height,
            counterparty.query_unreceived_packets,
        )

    async def query_unfinalized_relay_acknowledgements(self, height: int, counterparty: CounterpartyQuerier) -> list[PacketInfo]:
        """Received packets whose acknowledgement the counterparty has not processed yet."""
        return await self._query_unfinalized(
            CheckpointDirection.RECEIVED, height,
            self.find_received_packets, counterparty.get_latest_finalized_height,
            counterparty.query_unreceived_acknowledgements,
        )

    async def _query_unfinalized(
        self,
        direction: CheckpointDirection,
        height: int,
        find: Callable[[int, int], Awaitable[list[PacketInfo]]],
        finalized_height: Callable[[], Awaitable[int]],
        query_unreceived: Callable[[list[int], int], Awaitable[list[int]]],
    ) -> list[PacketInfo]:
        checkpoint = self.checkpoints.load(direction)
        if height < checkpoint:
            logger.debug(f"{direction.name} checkpoint {checkpoint} is ahead of height {height}")
            return []

        packets = await find(checkpoint, height)
        if packets:
            counterparty_height = await finalized_height()
            unreceived = set(await query_unreceived([p.sequence for p in packets], counterparty_height))
            packets = [p for p in packets if p.sequence in unreceived]

        new_checkpoint = min((p.event_height for p in packets), default=height + 1)
        self.checkpoints.save(direction, max(new_checkpoint, checkpoint))
        return packets
