"""End-to-end transfers between two peers sharing an in-process relay."""

import asyncio

import pytest

from common.checksum import compute_digest
from common.exceptions import InvalidFileMetadataError
from common.protocol import ChannelMessage, DataType
from peer.channel import LoopbackChannel
from peer.config import PeerConfig
from peer.transfer_manager import TransferManager
from peer.transfer_state import Direction, TransferStatus, Transport


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.01)


@pytest.fixture
def peers(make_relay_client):
    """
    Two managers, alice and bob, joined by a loopback channel.

    Returns:
        Factory taking an optional PeerConfig and whether bob answers
    """
    def _build(config=None, wire_bob=True):
        end_a, end_b = LoopbackChannel.pair('alice', 'bob')
        alice = TransferManager('alice', end_a, make_relay_client('alice', config=config))
        bob = TransferManager('bob', end_b, make_relay_client('bob', config=config))
        end_a.set_handler(alice.handle_message)
        if wire_bob:
            end_b.set_handler(bob.handle_message)
        return alice, bob, end_a, end_b

    return _build


async def shutdown(*managers):
    for manager in managers:
        await manager.close()
        await manager.relay_client.close()


class TestDirect:
    """Direct-channel transfers through the manager."""

    @pytest.mark.asyncio
    async def test_direct_send(self, peers):
        alice, bob, end_a, end_b = peers()
        data = bytes(range(256)) * 300

        state = await alice.send_direct('bob', 'blob.bin', data, file_type='application/octet-stream')
        await wait_until(lambda: bob.received)
        await end_a.drain()

        assert state.status == TransferStatus.COMPLETE
        assert state.progress == 100
        received = bob.received[0]
        assert received.data == data
        assert received.integrity == 'match'

        download = bob.transfers.find(state.file_id, Direction.DOWNLOAD, 'alice')
        assert download.status == TransferStatus.COMPLETE
        assert download.transport == Transport.DIRECT
        assert not alice.liveness.is_watched('bob')
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_heartbeat_answered_by_manager(self, peers):
        alice, bob, _, _ = peers()
        alice.liveness.watch('bob')
        assert await alice.liveness.check_peer('bob') is True
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_malformed_message_dropped(self, peers):
        alice, bob, _, _ = peers()
        await alice.handle_message('bob', b'{not json')
        assert len(alice.transfers) == 0
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_mistyped_fields_dropped(self, peers):
        alice, bob, _, _ = peers()
        await alice.handle_message('bob', b'{"dataType": "FILE", "fileId": "f1", "file": 42}')
        await alice.handle_message('bob', b'{"dataType": "FILE", "fileId": "f1", "chunkIndex": "-1"}')
        assert len(alice.transfers) == 0
        assert alice.receiver.in_progress == 0
        await shutdown(alice, bob)


class TestRelay:
    """Relayed transfers through the manager."""

    @pytest.mark.asyncio
    async def test_relay_round_trip(self, peers, relay_store):
        alice, bob, _, _ = peers()
        data = b'relayed payload ' * 400

        state = await alice.send_via_relay('bob', 'report.txt', data)

        await wait_until(lambda: state.status == TransferStatus.COMPLETE)
        received = bob.received[0]
        assert received.data == data
        assert received.file_name == 'report.txt'
        assert received.digest == compute_digest(data)
        assert received.integrity == 'match'
        assert state.progress == 100
        assert state.file_id not in alice.sources

        download = bob.transfers.find(state.file_id, Direction.DOWNLOAD, 'alice')
        assert download.status == TransferStatus.COMPLETE
        status = await alice.relay_client.get_file_status(state.file_id)
        assert status.downloaded_chunks['bob'] == list(range(status.total_chunks))
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_missing_chunks_recovered(self, peers, tmp_path):
        config = PeerConfig(
            tmp_path / 'recovery.json',
            relay_url='http://relay',
            upload_rate_limit=0,
            download_rate_limit=0,
            max_retries=0,
            chunk_wait_max_attempts=2,
            chunk_wait_initial_delay=0.01,
            recovery_attempts=20,
            recovery_delay=0.05,
            relay_chunk_size=4,
        )
        alice, bob, _, _ = peers(config=config)
        data = b'0000111122223333444'

        session = await alice.relay_client.start_session()
        await alice.relay_client.register_file('f1', 'digits.txt', len(data), 5)
        for index in (0, 1, 3):
            await alice.relay_client.upload_chunk('f1', index, data[index * 4:index * 4 + 4])
        alice.sources.add('f1', data, 4, recipients=['bob'])

        await alice.send_message('bob', ChannelMessage(
            DataType.RELAY_FILE_INFO,
            session_id=session.session_id,
            peer_id='alice',
            file_id='f1',
            file_name='digits.txt',
            file_size=len(data),
            total_chunks=5,
            chunk_size=4,
            file_hash=compute_digest(data),
        ))

        await wait_until(lambda: bob.received)
        assert bob.received[0].data == data
        assert bob.received[0].integrity == 'match'
        await wait_until(lambda: 'f1' not in alice.sources)
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, peers):
        alice, bob, _, _ = peers()
        with pytest.raises(InvalidFileMetadataError):
            await alice.send_via_relay('bob', 'empty', b'')
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_failed_download_ends_session(self, peers):
        alice, bob, _, _ = peers()
        info = ChannelMessage(
            DataType.RELAY_FILE_INFO,
            session_id='session_missing',
            file_id='f1',
            file_name='a',
            file_size=3,
            total_chunks=1,
        )

        state = await bob.receive_via_relay('alice', info)
        assert state.status == TransferStatus.ERROR
        assert bob.relay_client.session_id is None
        assert bob.received == []
        await shutdown(alice, bob)

    @pytest.mark.asyncio
    async def test_peer_unreachable_stops_relay_upload(self, peers, relay_store):
        alice, bob, end_a, end_b = peers(wire_bob=False)
        state = await alice.send_via_relay('bob', 'a.txt', b'x' * 3000)
        session_id = alice.relay_client.session_id
        assert alice.liveness.is_watched('bob')
        assert relay_store.get_session(session_id) is not None

        end_b.close()
        assert await alice.liveness.check_peer('bob') is False

        assert state.status == TransferStatus.STOPPED
        assert state.error == 'peer unreachable'
        assert alice.relay_client.session_id is None
        assert relay_store.get_session(session_id) is None
        assert len(alice.sources) == 0
        await shutdown(alice, bob)
