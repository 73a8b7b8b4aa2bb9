"""Tests for missing-chunk recovery and source retention."""

import pytest

from common.exceptions import FileNotFoundError, PeerUnreachableError, RecoveryFailedError
from common.protocol import MESSAGE_MISSING_CHUNKS, DataType
from common.types import FileStatus
from peer.recovery import ChunkSourceRegistry, MissingChunkRecovery, missing_indices
from tests.conftest import no_sleep


class FakeRelayClient:
    """Relay client double holding one file's uploaded indices."""

    def __init__(self, total, uploaded=()):
        self.peer_id = 'receiver'
        self.total = total
        self.uploaded = set(uploaded)
        self.status_calls = 0
        self.upload_calls = []

    async def get_file_status(self, file_id, session_id=None):
        self.status_calls += 1
        return FileStatus(
            file_name='a.bin',
            file_size=self.total,
            total_chunks=self.total,
            uploaded_chunks=sorted(self.uploaded),
        )

    async def upload_chunk(self, file_id, chunk_index, data, token=None):
        self.upload_calls.append((chunk_index, data))
        self.uploaded.add(chunk_index)
        return True


def test_missing_indices():
    """Test missing index computation."""
    assert missing_indices(5, [0, 1, 3]) == [2, 4]
    assert missing_indices(3, [2, 1, 0]) == []
    assert missing_indices(0, []) == []


class TestMissingChunkRecovery:
    """Test the receiver side of recovery."""

    @pytest.mark.asyncio
    async def test_already_complete_sends_nothing(self):
        client = FakeRelayClient(3, uploaded=[0, 1, 2])
        sent = []

        async def send(peer_id, message):
            sent.append(message)

        recovery = MissingChunkRecovery(client, send, sleep=no_sleep)
        status = await recovery.ensure_complete('f1', 3, 'sender')
        assert status.completed
        assert sent == []

    @pytest.mark.asyncio
    async def test_request_names_exact_missing_indices(self):
        client = FakeRelayClient(5, uploaded=[0, 1, 3])
        sent = []

        async def send(peer_id, message):
            sent.append((peer_id, message))
            client.uploaded.update(message.missing_chunks)

        recovery = MissingChunkRecovery(client, send, sleep=no_sleep)
        status = await recovery.ensure_complete('f1', 5, 'sender', session_id='session_s')

        assert status.completed
        peer_id, message = sent[0]
        assert peer_id == 'sender'
        assert message.data_type == DataType.RELAY_CHUNK_INFO
        assert message.message == MESSAGE_MISSING_CHUNKS
        assert message.missing_chunks == [2, 4]
        assert message.session_id == 'session_s'
        assert message.peer_id == 'receiver'

    @pytest.mark.asyncio
    async def test_converges_after_several_checks(self):
        client = FakeRelayClient(4, uploaded=[0])
        pending = [1, 2, 3]
        sleeps = []

        async def send(peer_id, message):
            pass

        async def slow_reupload(seconds):
            sleeps.append(seconds)
            client.uploaded.add(pending.pop(0))

        recovery = MissingChunkRecovery(client, send, attempts=3, delay=0.5, sleep=slow_reupload)
        status = await recovery.ensure_complete('f1', 4, 'sender')
        assert status.completed
        assert sleeps == [0.5, 0.5, 0.5]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        client = FakeRelayClient(3, uploaded=[0])

        async def send(peer_id, message):
            pass

        recovery = MissingChunkRecovery(client, send, attempts=3, sleep=no_sleep)
        with pytest.raises(RecoveryFailedError) as exc_info:
            await recovery.ensure_complete('f1', 3, 'sender')
        assert exc_info.value.missing == [1, 2]
        assert client.status_calls == 4

    @pytest.mark.asyncio
    async def test_unreachable_sender(self):
        client = FakeRelayClient(2, uploaded=[])

        async def send(peer_id, message):
            raise ConnectionError('channel closed')

        recovery = MissingChunkRecovery(client, send, sleep=no_sleep)
        with pytest.raises(PeerUnreachableError):
            await recovery.ensure_complete('f1', 2, 'sender')


class TestChunkSourceRegistry:
    """Test the sender side of recovery."""

    @pytest.mark.asyncio
    async def test_reupload_exactly_requested(self):
        client = FakeRelayClient(5)
        sources = ChunkSourceRegistry(client)
        sources.add('f1', b'aabbccddee', chunk_size=2, recipients=['receiver'])

        count = await sources.reupload('f1', [4, 2, 9, -1])
        assert count == 2
        assert client.upload_calls == [(2, b'cc'), (4, b'ee')]

    @pytest.mark.asyncio
    async def test_reupload_unknown_source(self):
        sources = ChunkSourceRegistry(FakeRelayClient(1))
        with pytest.raises(FileNotFoundError):
            await sources.reupload('gone', [0])

    def test_released_after_all_recipients_acknowledge(self):
        sources = ChunkSourceRegistry(FakeRelayClient(1))
        source = sources.add('f1', b'abc', chunk_size=2, recipients=['b', 'c'])
        assert source.total_chunks == 2
        assert source.chunk(1) == b'c'

        assert sources.acknowledge('f1', 'b') is False
        assert 'f1' in sources
        assert sources.acknowledge('f1', 'c') is True
        assert 'f1' not in sources
        assert sources.acknowledge('f1', 'c') is False

    def test_clear(self):
        sources = ChunkSourceRegistry(FakeRelayClient(1))
        sources.add('f1', b'a', 1)
        sources.add('f2', b'b', 1)
        assert sources.clear() == 2
        assert len(sources) == 0


@pytest.mark.asyncio
async def test_partial_upload_recovered_through_relay(make_relay_client):
    """Test chunks 2 and 4 of a five-chunk upload are restored on request."""
    sender = make_relay_client('sender')
    receiver = make_relay_client('receiver')
    data = b'0011223344'

    await sender.start_session()
    await sender.register_file('f1', 'a.bin', len(data), 5)
    for index in (0, 1, 3):
        await sender.upload_chunk('f1', index, data[index * 2:index * 2 + 2])

    sources = ChunkSourceRegistry(sender)
    sources.add('f1', data, chunk_size=2, recipients=['receiver'])
    requests = []

    async def send(peer_id, message):
        requests.append(message.missing_chunks)
        await sources.reupload(message.file_id, message.missing_chunks)

    await receiver.start_session()
    recovery = MissingChunkRecovery(receiver, send, delay=0.01)
    status = await recovery.ensure_complete('f1', 5, 'sender', session_id=sender.session_id)

    assert requests == [[2, 4]]
    assert status.uploaded_chunks == [0, 1, 2, 3, 4]
    chunks = [await receiver.download_chunk('f1', i) for i in range(5)]
    assert b''.join(chunks) == data

    await sender.close()
    await receiver.close()
