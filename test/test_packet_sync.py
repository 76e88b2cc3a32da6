"""Unit tests for PacketSyncEngine."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode

from eth_relayer.checkpoint import CheckpointStore
from eth_relayer.errors import NotFoundError, TransportError
from eth_relayer.models import CheckpointDirection, Height
from eth_relayer.packet_sync import (
    PACKET_TYPE,
    RECV_PACKET,
    SEND_PACKET,
    WRITE_ACKNOWLEDGEMENT,
    PacketSyncEngine,
    commitment_key,
)

from conftest import IBC_ADDRESS, offline_contract

CHANNEL = (3, 1, ("transfer", "channel-1"), ["connection-0"], "ics20-1", 0)


def send_log(sequence, block, port="transfer", channel="channel-0", data=b"payload"):
    return {
        "blockNumber": block,
        "data": encode(list(SEND_PACKET.types), [sequence, port, channel, (1, 1000), 0, data]),
    }


def recv_log(sequence, block, dst_port="transfer", dst_channel="channel-0"):
    packet = (sequence, "transfer", "channel-1", dst_port, dst_channel, b"in", (0, 500), 0)
    return {"blockNumber": block, "data": encode([PACKET_TYPE], [packet])}


def ack_log(sequence, block, dst_port="transfer", dst_channel="channel-0", ack=b"ok"):
    return {
        "blockNumber": block,
        "data": encode(list(WRITE_ACKNOWLEDGEMENT.types), [dst_port, dst_channel, sequence, ack]),
    }


class FakeHandler:
    """In-memory IBC handler serving logs and view calls."""

    def __init__(self, logs=None, live_sequences=(), channel_found=True, connection_state=3, commitment_error=None):
        self.logs = logs or {}
        self.live = {commitment_key("transfer", "channel-0", seq) for seq in live_sequences}
        self.channel_found = channel_found
        self.connection_state = connection_state
        self.commitment_error = commitment_error

    async def get_logs(self, address, topic, from_block, to_block):
        return [
            log for log in self.logs.get(topic, [])
            if from_block <= log["blockNumber"] <= to_block
        ]

    async def call(self, function, block="latest"):
        assert function.address == IBC_ADDRESS
        match function.fn_name:
            case "getChannel":
                assert function.args == ("transfer", "channel-0")
                return [CHANNEL, self.channel_found]
            case "getCommitment":
                if self.commitment_error:
                    raise self.commitment_error
                return b"\x01" * 32 if function.args[0] in self.live else b"\x00" * 32
            case "getConnection":
                assert function.args == ("connection-0",)
                connection = ("07-tendermint-0", [], self.connection_state, ("client-0", "connection-1", (b"ibc",)), 0)
                return [connection, True]
        raise AssertionError(f"unexpected call {function.fn_name}")


def calls_to(client, fn_name):
    return [c for c in client.call.await_args_list if c.args[0].fn_name == fn_name]


@pytest.fixture
def make_engine(make_config):
    """Factory for an engine around a handler double."""
    def factory(handler, **overrides):
        client = AsyncMock()
        client.contract = MagicMock(side_effect=offline_contract)
        client.get_logs.side_effect = handler.get_logs
        client.call.side_effect = handler.call
        config = make_config(**overrides)
        store = CheckpointStore(config.data_dir)
        return PacketSyncEngine(client, config, store), client
    return factory


@pytest.fixture
def counterparty():
    """Counterparty querier reporting every sequence as unreceived."""
    mock = AsyncMock()
    mock.get_latest_finalized_height.return_value = 77
    mock.query_unreceived_packets.side_effect = lambda seqs, height: list(seqs)
    mock.query_unreceived_acknowledgements.side_effect = lambda seqs, height: list(seqs)
    return mock


class TestHandlerContract:
    """Tests for the IBC handler contract binding."""

    def test_bound_to_configured_address(self, make_engine):
        """Test that the handler ABI is bound to the configured address."""
        engine, client = make_engine(FakeHandler())

        address, abi = client.contract.call_args.args
        assert address == IBC_ADDRESS
        assert {item["name"] for item in abi} >= {"getChannel", "getConnection", "getCommitment", "hasPacketReceipt"}
        assert engine.ibc_handler.address == IBC_ADDRESS

    @pytest.mark.asyncio
    async def test_packet_receipt_read_at_height(self, make_engine):
        """Test that receipts are read through the handler's hasPacketReceipt."""
        engine, client = make_engine(FakeHandler())
        client.call.side_effect = None
        client.call.return_value = True

        assert await engine.has_packet_receipt("transfer", "channel-1", 5, 42)

        function, block = client.call.await_args.args
        assert function.fn_name == "hasPacketReceipt"
        assert function.args == ("transfer", "channel-1", 5)
        assert block == 42


class TestQueryLogs:
    """Tests for windowed log queries."""

    @pytest.mark.asyncio
    async def test_windows(self, make_engine):
        """Test that 2500 blocks are scanned in three windows."""
        engine, client = make_engine(FakeHandler(), blocks_per_event_query=1000)

        await engine.query_logs(SEND_PACKET, 1, 2500)

        assert [c.args for c in client.get_logs.await_args_list] == [
            (IBC_ADDRESS, SEND_PACKET.topic, 1, 1000),
            (IBC_ADDRESS, SEND_PACKET.topic, 1001, 2000),
            (IBC_ADDRESS, SEND_PACKET.topic, 2001, 2500),
        ]

    @pytest.mark.asyncio
    async def test_single_block(self, make_engine):
        """Test that a one-block range issues one query."""
        engine, client = make_engine(FakeHandler())

        await engine.query_logs(SEND_PACKET, 7, 7)

        client.get_logs.assert_awaited_once_with(IBC_ADDRESS, SEND_PACKET.topic, 7, 7)

    @pytest.mark.asyncio
    async def test_empty_range(self, make_engine):
        """Test that an inverted range issues no query."""
        engine, client = make_engine(FakeHandler())

        assert await engine.query_logs(SEND_PACKET, 10, 9) == []
        client.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_results_in_window_order(self, make_engine):
        """Test that logs are concatenated in block order across windows."""
        logs = {SEND_PACKET.topic: [send_log(1, 5), send_log(2, 15), send_log(3, 25)]}
        engine, _ = make_engine(FakeHandler(logs), blocks_per_event_query=10)

        result = await engine.query_logs(SEND_PACKET, 1, 30)

        assert [log["blockNumber"] for log in result] == [5, 15, 25]


class TestFindSentPackets:
    """Tests for sent packet discovery."""

    @pytest.mark.asyncio
    async def test_filters_channel_and_commitment(self, make_engine):
        """Test that only packets on the channel with a live commitment are kept."""
        logs = {SEND_PACKET.topic: [
            send_log(1, 10),
            send_log(2, 11),
            send_log(3, 12, channel="channel-9"),
        ]}
        engine, _ = make_engine(FakeHandler(logs, live_sequences=[2, 3]))

        packets = await engine.find_sent_packets(1, 100)

        assert len(packets) == 1
        packet = packets[0]
        assert packet.sequence == 2
        assert (packet.source_port, packet.source_channel) == ("transfer", "channel-0")
        assert (packet.destination_port, packet.destination_channel) == ("transfer", "channel-1")
        assert packet.data == b"payload"
        assert packet.timeout_height == Height(1, 1000)
        assert packet.event_height == 11
        assert packet.acknowledgement is None

    @pytest.mark.asyncio
    async def test_commitment_read_at_scan_height(self, make_engine):
        """Test that commitments are looked up at the scanned height."""
        logs = {SEND_PACKET.topic: [send_log(4, 10)]}
        engine, client = make_engine(FakeHandler(logs, live_sequences=[4]))

        await engine.find_sent_packets(1, 100)

        (commitment_call,) = calls_to(client, "getCommitment")
        function, block = commitment_call.args
        assert function.args == (commitment_key("transfer", "channel-0", 4),)
        assert block == 100

    @pytest.mark.asyncio
    async def test_counterparty_is_cached(self, make_engine):
        """Test that the channel is queried once until refreshed."""
        logs = {SEND_PACKET.topic: [send_log(1, 10)]}
        engine, client = make_engine(FakeHandler(logs, live_sequences=[1]))

        await engine.find_sent_packets(1, 100)
        await engine.find_sent_packets(1, 100)

        assert len(calls_to(client, "getChannel")) == 1
        await engine.refresh_channel()
        assert len(calls_to(client, "getChannel")) == 2

    @pytest.mark.asyncio
    async def test_channel_not_found(self, make_engine):
        """Test that a missing channel is reported."""
        logs = {SEND_PACKET.topic: [send_log(1, 10)]}
        engine, _ = make_engine(FakeHandler(logs, channel_found=False))

        with pytest.raises(NotFoundError, match="channel not found"):
            await engine.find_sent_packets(1, 100)


class TestConnectionOpened:
    """Tests for the cached connection state check."""

    @pytest.mark.asyncio
    async def test_open_is_cached(self, make_engine):
        """Test that an open connection is queried once until refreshed."""
        engine, client = make_engine(FakeHandler())

        assert await engine.connection_opened()
        assert await engine.connection_opened()

        assert len(calls_to(client, "getConnection")) == 1
        await engine.refresh_channel()
        assert await engine.connection_opened()
        assert len(calls_to(client, "getConnection")) == 2

    @pytest.mark.asyncio
    async def test_not_open_is_requeried(self, make_engine):
        """Test that a connection still opening is checked again next time."""
        handler = FakeHandler(connection_state=2)
        engine, _ = make_engine(handler)

        assert not await engine.connection_opened()
        handler.connection_state = 3
        assert await engine.connection_opened()


class TestFindReceivedPackets:
    """Tests for received packet discovery."""

    @pytest.mark.asyncio
    async def test_joins_acknowledgements(self, make_engine):
        """Test that receive events are joined with their acknowledgements."""
        logs = {
            RECV_PACKET.topic: [recv_log(1, 20), recv_log(2, 21), recv_log(3, 22, dst_channel="channel-5")],
            WRITE_ACKNOWLEDGEMENT.topic: [ack_log(1, 20, ack=b"a1"), ack_log(3, 22), ack_log(9, 23)],
        }
        engine, _ = make_engine(FakeHandler(logs))

        packets = await engine.find_received_packets(1, 100)

        assert len(packets) == 1
        assert packets[0].sequence == 1
        assert packets[0].acknowledgement == b"a1"
        assert packets[0].source_channel == "channel-1"
        assert packets[0].event_height == 20

    @pytest.mark.asyncio
    async def test_ack_window_starts_at_first_receive(self, make_engine):
        """Test that acknowledgements are searched from the earliest receive event."""
        logs = {
            RECV_PACKET.topic: [recv_log(1, 40), recv_log(2, 45)],
            WRITE_ACKNOWLEDGEMENT.topic: [ack_log(1, 40)],
        }
        engine, client = make_engine(FakeHandler(logs))

        await engine.find_received_packets(10, 100)

        ack_calls = [c for c in client.get_logs.await_args_list if c.args[1] == WRITE_ACKNOWLEDGEMENT.topic]
        assert [c.args[2:] for c in ack_calls] == [(40, 100)]

    @pytest.mark.asyncio
    async def test_no_receive_events(self, make_engine):
        """Test that acknowledgements are not queried without receive events."""
        engine, client = make_engine(FakeHandler())

        assert await engine.find_received_packets(1, 100) == []
        assert client.get_logs.await_count == 1

    @pytest.mark.asyncio
    async def test_no_acknowledgements(self, make_engine):
        """Test that receive events without acknowledgements yield nothing."""
        logs = {RECV_PACKET.topic: [recv_log(1, 20)]}
        engine, _ = make_engine(FakeHandler(logs))

        assert await engine.find_received_packets(1, 100) == []


class TestUnfinalizedRelay:
    """Tests for unrelayed packet queries and checkpoint handling."""

    @pytest.mark.asyncio
    async def test_checkpoint_at_earliest_remaining(self, make_engine, counterparty):
        """Test that the checkpoint moves to the earliest remaining packet."""
        logs = {SEND_PACKET.topic: [send_log(1, 10), send_log(2, 20), send_log(3, 30)]}
        engine, _ = make_engine(FakeHandler(logs, live_sequences=[1, 2, 3]))
        counterparty.query_unreceived_packets.side_effect = lambda seqs, height: [3, 2]

        packets = await engine.query_unfinalized_relay_packets(100, counterparty)

        assert [p.sequence for p in packets] == [2, 3]
        counterparty.query_unreceived_packets.assert_awaited_once_with([1, 2, 3], 77)
        assert engine.checkpoints.load(CheckpointDirection.SENT) == 20

    @pytest.mark.asyncio
    async def test_checkpoint_past_height_when_done(self, make_engine, counterparty):
        """Test that the checkpoint moves past the scanned height when nothing remains."""
        logs = {SEND_PACKET.topic: [send_log(1, 10)]}
        engine, _ = make_engine(FakeHandler(logs, live_sequences=[1]))
        counterparty.query_unreceived_packets.side_effect = lambda seqs, height: []

        assert await engine.query_unfinalized_relay_packets(100, counterparty) == []
        assert engine.checkpoints.load(CheckpointDirection.SENT) == 101

    @pytest.mark.asyncio
    async def test_scan_resumes_from_checkpoint(self, make_engine, counterparty):
        """Test that the next scan starts at the saved checkpoint."""
        engine, client = make_engine(FakeHandler())
        engine.checkpoints.save(CheckpointDirection.SENT, 60)

        await engine.query_unfinalized_relay_packets(100, counterparty)

        client.get_logs.assert_awaited_once_with(IBC_ADDRESS, SEND_PACKET.topic, 60, 100)
        counterparty.get_latest_finalized_height.assert_not_awaited()
        assert engine.checkpoints.load(CheckpointDirection.SENT) == 101

    @pytest.mark.asyncio
    async def test_height_below_checkpoint(self, make_engine, counterparty):
        """Test that a height behind the checkpoint returns nothing and keeps it."""
        engine, client = make_engine(FakeHandler())
        engine.checkpoints.save(CheckpointDirection.SENT, 200)

        assert await engine.query_unfinalized_relay_packets(100, counterparty) == []
        client.get_logs.assert_not_awaited()
        assert engine.checkpoints.load(CheckpointDirection.SENT) == 200

    @pytest.mark.asyncio
    async def test_checkpoint_not_saved_on_error(self, make_engine, counterparty):
        """Test that a failing counterparty query leaves the checkpoint untouched."""
        logs = {SEND_PACKET.topic: [send_log(1, 10)]}
        engine, _ = make_engine(FakeHandler(logs, live_sequences=[1]))
        counterparty.query_unreceived_packets.side_effect = TransportError("counterparty down")

        with pytest.raises(TransportError):
            await engine.query_unfinalized_relay_packets(100, counterparty)
        assert not engine.checkpoints.path(CheckpointDirection.SENT).exists()

    @pytest.mark.asyncio
    async def test_checkpoint_not_saved_on_log_error(self, make_engine, counterparty):
        """Test that a failing log query leaves the checkpoint untouched."""
        engine, client = make_engine(FakeHandler())
        client.get_logs.side_effect = TransportError("eth_getLogs(1-100): timeout")

        with pytest.raises(TransportError, match="eth_getLogs"):
            await engine.query_unfinalized_relay_packets(100, counterparty)
        assert not engine.checkpoints.path(CheckpointDirection.SENT).exists()
        counterparty.get_latest_finalized_height.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checkpoint_not_saved_on_commitment_error(self, make_engine, counterparty):
        """Test that a failing commitment read leaves the checkpoint untouched."""
        logs = {SEND_PACKET.topic: [send_log(1, 10)]}
        error = TransportError("eth_call(getCommitment): connection reset")
        engine, _ = make_engine(FakeHandler(logs, live_sequences=[1], commitment_error=error))

        with pytest.raises(TransportError, match="getCommitment"):
            await engine.query_unfinalized_relay_packets(100, counterparty)
        assert not engine.checkpoints.path(CheckpointDirection.SENT).exists()
        counterparty.query_unreceived_packets.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_acknowledgements_use_recv_checkpoint(self, make_engine, counterparty):
        """Test the acknowledgement direction end to end."""
        logs = {
            RECV_PACKET.topic: [recv_log(1, 20), recv_log(2, 30)],
            WRITE_ACKNOWLEDGEMENT.topic: [ack_log(1, 20), ack_log(2, 30)],
        }
        engine, _ = make_engine(FakeHandler(logs))
        counterparty.query_unreceived_acknowledgements.side_effect = lambda seqs, height: [2]

        packets = await engine.query_unfinalized_relay_acknowledgements(100, counterparty)

        assert [p.sequence for p in packets] == [2]
        assert packets[0].acknowledgement == b"ok"
        counterparty.query_unreceived_acknowledgements.assert_awaited_once_with([1, 2], 77)
        assert engine.checkpoints.load(CheckpointDirection.RECEIVED) == 30
        assert not engine.checkpoints.path(CheckpointDirection.SENT).exists()

    @pytest.mark.asyncio
    async def test_initial_checkpoint(self, make_engine, counterparty):
        """Test that the first scan starts at the configured initial height."""
        engine, client = make_engine(FakeHandler())
        engine.checkpoints.initial = {CheckpointDirection.SENT: 50}

        await engine.query_unfinalized_relay_packets(80, counterparty)

        client.get_logs.assert_awaited_once_with(IBC_ADDRESS, SEND_PACKET.topic, 50, 80)
